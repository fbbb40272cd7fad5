"""Integration tests for health endpoints."""

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from riskengine.api.routes import health
from riskengine.main import app

pytestmark = pytest.mark.integration


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health_endpoint(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert "version" in data
            assert "uptime_seconds" in data

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health", headers={"X-Request-ID": "req-42"})
            assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_ready_when_redis_up(self, monkeypatch):
        monkeypatch.setattr(health, "check_redis", AsyncMock(return_value=True))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ready")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "ready"
            assert data["store_backend"] == "memory"

    @pytest.mark.asyncio
    async def test_degraded_when_redis_down(self, monkeypatch):
        monkeypatch.setattr(health, "check_redis", AsyncMock(return_value=False))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ready")
            assert response.status_code == 503
            assert response.json() == {
                "status": "degraded",
                "store_backend": "memory",
                "database": True,
                "redis": False,
            }

    @pytest.mark.asyncio
    async def test_ready_checks_database_for_sql_backend(self, monkeypatch):
        monkeypatch.setattr(health.settings, "store_backend", "sql")
        monkeypatch.setattr(health, "check_db", AsyncMock(return_value=False))
        monkeypatch.setattr(health, "check_redis", AsyncMock(return_value=True))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ready")
            assert response.status_code == 503
            assert response.json()["database"] is False
