from fastapi.testclient import TestClient

from taskboard.main import app


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_agent_directory_lists_task_endpoints() -> None:
    client = TestClient(app)
    response = client.get("/.well-known/agent.json")
    assert response.status_code == 200
    endpoints = response.json()["endpoints"]
    assert endpoints["find_work"] == "GET /tasks/next"
    assert endpoints["deliver"] == "POST /tasks/{id}/deliver"
