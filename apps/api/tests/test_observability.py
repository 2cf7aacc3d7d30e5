from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from stampline_api.app import create_app
from stampline_api.core.settings import settings
from stampline_api.observability.loyalty import get_loyalty_store
from stampline_api.observability.tracing import parse_otlp_headers
from stampline_api.services.loyalty import EarnEngine, InMemoryPassSyncNotifier, PassSyncRequest, dispatch_pass_sync


@pytest.mark.asyncio
async def test_loyalty_snapshot_requires_key() -> None:
    app = create_app()

    previous_key = settings.admin_api_key
    settings.admin_api_key = "snapshot-key"

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            denied = await client.get("/api/v1/observability/loyalty")
            allowed = await client.get("/api/v1/observability/loyalty", headers={"X-API-Key": "snapshot-key"})
    finally:
        settings.admin_api_key = previous_key

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"earns": {}, "redemptions": {}, "programs": {}, "pass_sync": {}}


@pytest.mark.asyncio
async def test_prometheus_metrics_include_earn_outcomes(session_factory, create_active_program) -> None:
    async with session_factory() as session:
        program = await create_active_program(session)
        engine = EarnEngine(session)
        await engine.record_earn(program.public_id, "pass-1", program.counter_qr_token, "203.0.113.1")
        await engine.record_earn(program.public_id, "pass-1", "forged", "203.0.113.1")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/observability/prometheus")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert "stampline_loyalty_earn_attempts_total 2" in body
    assert 'stampline_loyalty_earn_outcomes_total{outcome="earned"} 1' in body
    assert 'stampline_loyalty_earn_outcomes_total{outcome="invalid_token"} 1' in body
    assert 'stampline_loyalty_program_events_total{event="created"} 1' in body
    assert "stampline_loyalty_redemption_attempts_total 0" in body


@pytest.mark.asyncio
async def test_failed_pass_delivery_is_recorded() -> None:
    class BrokenNotifier:
        async def push_fields(self, request: PassSyncRequest) -> None:
            raise ConnectionError("provider down")

    request = PassSyncRequest(
        program_public_id="abc123",
        pass_template_id="tpl",
        pass_type_id="pass.type",
        pass_api_key="key",
        serial="serial-1",
        fields={"Points": "1"},
    )
    healthy = InMemoryPassSyncNotifier()

    assert await dispatch_pass_sync(BrokenNotifier(), request) is False
    assert await dispatch_pass_sync(healthy, request) is True
    assert healthy.sent == [request]
    assert get_loyalty_store().snapshot().pass_sync == {"failed": 1, "delivered": 1}


def test_parse_otlp_headers() -> None:
    assert parse_otlp_headers("") is None
    assert parse_otlp_headers("api-key=abc, x-team = core,broken") == {"api-key": "abc", "x-team": "core"}
    assert parse_otlp_headers("novalue") is None


def test_store_tracks_conflict_retries_separately() -> None:
    store = get_loyalty_store()
    store.record_earn_conflict_retry()
    store.record_earn("earned")

    snapshot = store.snapshot()
    assert snapshot.earns == {"retries": 1, "total": 1, "earned": 1}
