import pytest
from httpx import ASGITransport, AsyncClient

from stampline_api.core.settings import settings


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/health/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    components = payload["components"]
    assert components["database"]["status"] == "ready"
    assert components["pass_sync"]["status"] == "ready"


@pytest.mark.asyncio
async def test_readyz_is_degraded_without_pass_sync(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "pass_sync_enabled", False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/health/readyz")

    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["components"]["pass_sync"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_liveness_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        root = await client.get("/healthz")
        alias = await client.get("/api/v1/health/healthz")

    assert root.status_code == 200
    assert root.json()["status"] == "ok"
    assert root.json()["version"] == "0.1.0"
    assert alias.json() == {"status": "ok"}
