"""HTTP tests for the root and health endpoints."""

import pytest

pytestmark = pytest.mark.integration


class TestHealth:
    """Tests for liveness and readiness."""

    def test_root(self, client):
        """Should describe the service."""
        body = client.get("/").json()

        assert body["name"] == "Zawadi Wallet"
        assert body["ussd"] == "/api/v1/ussd"

    @pytest.mark.parametrize("path", ["/health", "/api/v1/health"])
    def test_health(self, client, path):
        """Should answer on both mounts."""
        response = client.get(path)

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["environment"] == "development"

    def test_ready(self, client):
        """Should check the database and Redis."""
        body = client.get("/api/v1/health/ready").json()

        assert body["ready"] is True
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["redis"]["status"] == "ok"
        assert body["checks"]["reconciliation"] == {"status": "ok", "flagged": 0}
        assert body["checks"]["providers"]["registered"] == ["kotanipay", "yellowcard"]

    def test_not_ready_without_redis(self, mocker, client, fake_redis):
        """Should report Redis failures."""
        mocker.patch.object(fake_redis, "ping", side_effect=ConnectionError("refused"))

        body = client.get("/api/v1/health/ready").json()

        assert body["ready"] is False
        assert body["checks"]["redis"]["status"] == "error"

    def test_live(self, client):
        """Should answer without dependencies."""
        assert client.get("/health/live").json()["status"] == "alive"
