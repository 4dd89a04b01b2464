"""
Tests for health probes and the metrics endpoint.

Tests cover:
- /health/live always 200
- /health/ready with and without required secrets
- /metrics exposes request, webhook and export metrics
"""

from app import main
from app.metrics import normalize_path


class TestHealth:
    """Liveness and readiness probes."""

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_jwt_secret(self, client, monkeypatch):
        monkeypatch.setattr(main.settings, "JWT_SECRET_KEY", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
        assert response.json()["reason"] == "Not configured: JWT_SECRET_KEY"


class TestMetrics:
    """GET /metrics."""

    def test_counters_exposed(self, client, seed, make_log, headers_for):
        make_log(seed.order_a)
        client.post("/api/communication-export/csv", json={}, headers=headers_for(seed.user_a))
        client.post("/api/communication-audit/webhooks/sendgrid", content=b"[]")

        text = client.get("/metrics").text

        assert "http_requests_total" in text
        assert 'export_requests_total{format="csv",mode="sync"}' in text
        assert 'export_render_seconds_count{format="csv"}' in text
        assert 'webhook_events_total{provider="SendGrid",result="invalid_signature"}' in text

    def test_ids_collapsed_in_paths(self):
        path = "/api/communication-audit/orders/0f8fad5b-d9cb-469f-a165-70867728950e"
        assert normalize_path(path) == "/api/communication-audit/orders/{id}"
        assert normalize_path("/health/live?x=1") == "/health/live"
