import os
import sqlite3

db = os.getenv("WALEMCP_DB_PATH", os.path.join("walemcp", "walemcp.db"))
print(f"DB: {db}")

c = sqlite3.connect(db)
c.row_factory = sqlite3.Row
cur = c.cursor()

tables = [r[0] for r in cur.execute("select name from sqlite_master where type='table' order by name").fetchall()]
print("tables =", tables)

print("\n=== TEMPLATES ===")
if "templates" in tables:
    for r in cur.execute("select id, name, version, category, created_at from templates order by created_at desc limit 20"):
        print(dict(r))

print("\n=== RESULTS BY STATUS ===")
if "task_results" in tables:
    for r in cur.execute("select status, count(*) as n from task_results group by status"):
        print(f"{r['status']} = {r['n']}")

    print("\n=== LATEST RESULTS ===")
    for r in cur.execute("select task_id, status, created_at from task_results order by created_at desc limit 15"):
        print(dict(r))

c.close()
