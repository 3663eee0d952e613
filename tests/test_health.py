"""
Tests for health probes and the /metrics endpoint.
"""

from chatapp.config import settings


class TestHealth:
    """Test liveness and readiness probes."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_api_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_API_KEY", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "PUBLIC_API_KEY not configured"

    def test_incoming_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"


class TestMetrics:
    """Test the Prometheus exposition."""

    def test_metrics_exposed(self, client, alice, direct_chat):
        client.post(f"/conversations/{direct_chat['id']}/messages", json={"content": "hi"}, headers=alice["headers"])

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert 'messages_created_total{message_type="text"}' in body
        assert "http_requests_total" in body
        assert 'path="/conversations/{conversation_id}/messages"' in body
        assert "realtime_connections" in body
