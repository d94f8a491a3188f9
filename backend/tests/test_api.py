"""HTTP surface tests: FastAPI app wired to the test orchestrator."""

import pytest
from fastapi.testclient import TestClient

from walemcp.errors import StorageError
from walemcp.main import create_app
from walemcp.settings import Settings

TEMPLATE = {
    "name": "Price Watch",
    "category": "analytics",
    "inputs": [{"name": "token", "type": "token", "required": True}],
    "steps": [{"id": "fetch", "type": "api_call"}],
}


@pytest.fixture
def settings():
    return Settings(log_level="WARNING")


@pytest.fixture
def client(settings, orchestrator):
    with TestClient(create_app(settings, orchestrator=orchestrator)) as c:
        yield c


def register(client, **extra):
    res = client.post("/api/v1/templates", json={"template": TEMPLATE, **extra}, headers={"X-User-Id": "alice"})
    assert res.status_code == 200, res.text
    return res.json()["template_id"]


def test_health(client):
    assert client.get("/health").json()["success"] is True
    body = client.get("/api/v1/health").json()
    assert body["tools"] == 6
    assert body["dry_run"] is True
    assert body["llm_enabled"] is False


def test_register_uses_header_user(client, orchestrator):
    template_id = register(client)
    assert orchestrator.get_template(template_id).author == "alice"


def test_body_creator_wins(client, orchestrator):
    template_id = register(client, creator_id="bob")
    assert orchestrator.get_template(template_id).author == "bob"


def test_list_templates_filters(client):
    template_id = register(client)
    listed = client.get("/api/v1/templates", params={"category": "analytics"}).json()
    assert listed["count"] == 1
    assert listed["templates"][0]["id"] == template_id
    assert client.get("/api/v1/templates", params={"creator": "nobody"}).json()["count"] == 0


def test_execute_and_fetch_result(client):
    template_id = register(client)
    res = client.post("/api/v1/execute", json={"template_id": template_id, "inputs": {"token": "SOL"}})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    task_id = body["result"]["task_id"]

    fetched = client.get(f"/api/v1/tasks/{task_id}").json()
    assert fetched["result"]["status"] == "success"
    assert fetched["result"]["metadata"]["executed_steps"] == ["fetch"]


def test_unknown_template_is_404(client):
    res = client.post("/api/v1/execute", json={"template_id": "tpl_missing"})
    assert res.status_code == 404
    assert res.json() == {"success": False, "error": "Template not found: tpl_missing"}


def test_unknown_task_is_404(client):
    assert client.get("/api/v1/tasks/task_missing").status_code == 404


def test_invalid_template_is_400(client):
    bad = {**TEMPLATE, "steps": [{"id": "s", "type": "api_call", "tool_id": "nope"}]}
    res = client.post("/api/v1/templates", json={"template": bad})
    assert res.status_code == 400
    assert "no tool for nope" in res.json()["error"]


def test_malformed_body_is_422(client):
    res = client.post("/api/v1/execute", json={"inputs": {}})
    assert res.status_code == 422
    assert res.json()["success"] is False


def test_collaborator_error_is_masked_in_production(orchestrator, monkeypatch):
    def broken(task_id):
        raise StorageError("sqlite is on fire")

    monkeypatch.setattr(orchestrator, "get_task_result", broken)
    app = create_app(Settings(log_level="WARNING", production=True), orchestrator=orchestrator)
    with TestClient(app) as c:
        res = c.get("/api/v1/tasks/task_1")
    assert res.status_code == 502
    assert res.json()["error"] == "Upstream service error"


def test_unhandled_error_is_500(orchestrator, monkeypatch):
    def broken(task_id):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(orchestrator, "get_task_result", broken)
    with TestClient(create_app(Settings(log_level="WARNING"), orchestrator=orchestrator), raise_server_exceptions=False) as c:
        res = c.get("/api/v1/tasks/task_1")
    assert res.status_code == 500
    assert res.json() == {"success": False, "error": "unexpected"}


def test_unknown_route_uses_error_shape(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.json() == {"success": False, "error": "Not Found"}


def test_wrong_method_uses_error_shape(client):
    res = client.delete("/api/v1/templates")
    assert res.status_code == 405
    assert res.json() == {"success": False, "error": "Method Not Allowed"}
