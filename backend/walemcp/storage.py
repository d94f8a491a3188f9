from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import StorageError
from .models import TaskResult, TaskTemplate

logger = logging.getLogger(__name__)


DB_FILENAME = "walemcp.db"


class DataStorage:
    """sqlite-backed store for templates and task results."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        base_dir = Path(__file__).resolve().parent
        self.db_path = db_path or str(base_dir / DB_FILENAME)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        try:
            with self._conn() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS templates (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        version TEXT NOT NULL,
                        category TEXT NOT NULL,
                        template_json TEXT NOT NULL,
                        created_at TEXT NOT NULL DEFAULT (datetime('now'))
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS task_results (
                        task_id TEXT PRIMARY KEY,
                        status TEXT NOT NULL,
                        result_json TEXT NOT NULL,
                        created_at TEXT NOT NULL DEFAULT (datetime('now'))
                    );
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_templates_category ON templates(category)")
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to initialise storage at {self.db_path}: {exc}") from exc

    # ---------- Templates ----------

    def store_template(self, template: TaskTemplate, template_id: str) -> str:
        stored = template.model_copy(update={"id": template_id})
        try:
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT INTO templates(id, name, version, category, template_json)
                    VALUES(?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name=excluded.name,
                        version=excluded.version,
                        category=excluded.category,
                        template_json=excluded.template_json
                    """,
                    (template_id, stored.name, stored.version, stored.category, stored.model_dump_json()),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to store template {template_id}: {exc}") from exc
        logger.debug("Stored template %s", template_id)
        return f"local://templates/{template_id}"

    def get_template(self, template_id: str) -> Optional[TaskTemplate]:
        try:
            with self._conn() as conn:
                row = conn.execute("SELECT template_json FROM templates WHERE id=?", (template_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read template {template_id}: {exc}") from exc
        if not row:
            return None
        try:
            return TaskTemplate.model_validate_json(row["template_json"])
        except ValidationError as exc:
            raise StorageError(f"Stored template {template_id} is corrupt") from exc

    def list_templates(self) -> list[TaskTemplate]:
        try:
            with self._conn() as conn:
                rows = conn.execute("SELECT template_json FROM templates ORDER BY created_at, id").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list templates: {exc}") from exc
        return [TaskTemplate.model_validate_json(r["template_json"]) for r in rows]

    # ---------- Results ----------

    def store_result(self, result: TaskResult) -> str:
        """Persist ``result`` with its ``storage_ref`` filled in and return that ref."""
        ref = f"local://results/{result.task_id}"
        result = result.model_copy(update={"metadata": result.metadata.model_copy(update={"storage_ref": ref})})
        try:
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT INTO task_results(task_id, status, result_json)
                    VALUES(?, ?, ?)
                    ON CONFLICT(task_id) DO UPDATE SET
                        status=excluded.status,
                        result_json=excluded.result_json
                    """,
                    (result.task_id, result.status, result.model_dump_json()),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to store result for {result.task_id}: {exc}") from exc
        return ref

    def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        try:
            with self._conn() as conn:
                row = conn.execute("SELECT result_json FROM task_results WHERE task_id=?", (task_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read result {task_id}: {exc}") from exc
        if not row:
            return None
        try:
            return TaskResult.model_validate_json(row["result_json"])
        except ValidationError as exc:
            raise StorageError(f"Stored result {task_id} is corrupt") from exc
