from fastapi.testclient import TestClient

from taskkeeper import app as app_module


def test_healthz_reports_store_and_cache():
    client = TestClient(app_module.app)

    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["version"] == app_module.__version__


def test_request_id_is_echoed():
    client = TestClient(app_module.app)

    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_generated_when_absent():
    client = TestClient(app_module.app)

    response = client.get("/users/me")

    assert response.headers["X-Request-ID"]
    assert response.json()["status"] == "error"


def test_security_headers():
    client = TestClient(app_module.app)

    response = client.get("/healthz")

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in response.headers["Cache-Control"]


def test_lifespan_starts_and_stops_cleanly():
    with TestClient(app_module.app) as client:
        assert client.get("/healthz").status_code == 200
