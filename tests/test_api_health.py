"""Tests for the /health endpoint."""


class TestHealthEndpoint:
    def test_returns_200(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200

    def test_status_is_healthy(self, api_client):
        data = api_client.get("/health").json()
        assert data["success"] is True
        assert data["status"] == "healthy"

    def test_reports_configuration(self, api_client):
        data = api_client.get("/health").json()
        assert data["crm_configured"] is True
        assert data["llm_configured"] is True
        assert data["tracing_enabled"] is False
