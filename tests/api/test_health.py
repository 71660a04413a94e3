from __future__ import annotations

from fastapi.testclient import TestClient

from app.main import create_app
from tests.conftest import learner_headers, make_settings


def test_health_returns_ok(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    # In tests, Redis and the dashboard backend are not configured
    assert data["checks"] == {
        "redis": "not_configured",
        "dashboard_api": "not_configured",
    }


def test_health_counts_active_sessions(client: TestClient) -> None:
    assert client.get("/health").json()["active_sessions"] == 0
    client.get("/v1/progress/state", headers=learner_headers())
    assert client.get("/health").json()["active_sessions"] == 1


def test_ready_returns_200(client: TestClient) -> None:
    resp = client.get("/ready")
    assert resp.status_code == 200


def test_ready_is_503_before_startup() -> None:
    # Without the context manager the lifespan hook never runs.
    client = TestClient(create_app(make_settings()))
    assert client.get("/ready").status_code == 503
