"""
Health endpoints and app-level error handler tests.
"""


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok", "app": "Business Diagnostic Engine"}


def test_ready(client):
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_live_reports_dependencies(client):
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "ok"
    catalogs = body["checks"]["catalogs"]
    assert catalogs["status"] == "ok"
    assert catalogs["cause_catalog"] == "1.0.0"
    assert catalogs["gaps"] == 3
    assert body["checks"]["app"]["testing"] is True


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nada")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nada"


def test_method_not_allowed(client):
    res = client.delete("/api/v1/diagnostic/catalog/causes")
    assert res.status_code == 405


def test_request_id_is_echoed(client):
    res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
    assert res.headers["X-Request-ID"] == "abc123"
    assert "X-Request-Duration-Ms" in res.headers
