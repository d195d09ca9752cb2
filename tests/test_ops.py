# tests/test_ops.py
import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio


async def test_root_and_health(client: AsyncClient):
    r = await client.get("/")
    assert r.status_code == 200
    assert "app" in r.json()

    r = await client.get("/api/v1/health/")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}

    r = await client.get("/api/v1/health/db")
    assert r.status_code == 200
    assert r.json()["database"] == "reachable"


async def test_metrics_and_health_checks(client: AsyncClient):
    """測試 /metrics, /healthz, /readyz 都能正確回應"""
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "# HELP" in r.text  # Prometheus metrics 格式驗證

    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json().get("ok") is True

    r = await client.get("/readyz")
    assert r.status_code == 200
    assert r.json().get("ready") is True


async def test_security_headers(client: AsyncClient):
    r = await client.get("/healthz")
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"


async def test_unknown_route_uses_unified_error_format(client: AsyncClient):
    r = await client.get("/api/v1/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"detail": "Not Found"}
