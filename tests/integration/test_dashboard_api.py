from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from gemini_lb.core.config.settings import get_settings
from gemini_lb.main import create_app

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_dashboard_reports_pool_limits_and_cursor(async_client) -> None:
    response = await async_client.get("/api/gemini/dashboard")

    assert response.status_code == 200
    body = response.json()
    assert body["rrIndex"] == 0
    assert body["limits"] == {"RPM": 15, "RPD": 1500, "TPM": 20000}
    assert body["lastPersistAt"] is None
    assert len(body["keys"]) == 3
    first = body["keys"][0]
    assert first["status"] == "active"
    assert first["rpmUsed"] == 0
    assert first["cooldownUntil"] is None
    assert "test-key" not in response.text


@pytest.mark.asyncio
async def test_balancer_load_test_spreads_requests(async_client) -> None:
    response = await async_client.post("/api/gemini/test-balancer", json={"count": 7})

    assert response.status_code == 200
    body = response.json()
    assert body["dryRun"] is True
    assert [entry["requests"] for entry in body["distribution"]] == [3, 2, 2]
    assert len(body["resultsSample"]) == 7
    assert all(result["ok"] for result in body["resultsSample"])
    assert body["usage"]["rrIndex"] == 1
    assert sum(key["rpdUsed"] for key in body["usage"]["keys"]) == 7


@pytest.mark.asyncio
async def test_balancer_load_test_without_body_uses_defaults(async_client) -> None:
    response = await async_client.post("/api/gemini/test-balancer")

    assert response.status_code == 200
    assert response.json()["count"] == 10


@pytest.mark.asyncio
async def test_balancer_load_test_count_is_bounded(async_client) -> None:
    too_many = await async_client.post("/api/gemini/test-balancer", json={"count": 501})
    too_few = await async_client.post("/api/gemini/test-balancer", json={"count": 0})

    assert too_many.status_code == 422
    assert too_many.json()["error"]["code"] == "validation_error"
    assert too_few.status_code == 422
    assert too_few.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_health_and_metrics(async_client) -> None:
    await async_client.post("/api/gemini/generate", json={"prompt": "count me", "dryRun": True})

    health = await async_client.get("/health")
    assert health.json() == {"status": "ok", "keys": 3}

    metrics = await async_client.get("/metrics")
    assert metrics.status_code == 200
    assert "gemini_lb_acquire_total" in metrics.text
    assert "gemini_lb_key_usage" in metrics.text
    assert "gemini_lb_rr_index 1.0" in metrics.text


@pytest.mark.asyncio
async def test_debug_state_hidden_unless_enabled(async_client, monkeypatch) -> None:
    hidden = await async_client.get("/debug/lb/state")
    assert hidden.status_code == 404

    monkeypatch.setenv("GEMINI_LB_DEBUG_ENDPOINTS_ENABLED", "true")
    get_settings.cache_clear()

    response = await async_client.get("/debug/lb/state", params={"estimatedTokens": 50_000})

    assert response.status_code == 200
    body = response.json()
    assert body["selector"] == "round_robin"
    assert body["limits"] == {"rpm": 15, "rpd": 1500, "tpm": 20000}
    assert [row["eligibility"]["reason"] for row in body["keys"]] == ["tpm_limit"] * 3


@pytest.mark.asyncio
async def test_empty_key_pool_returns_503(monkeypatch) -> None:
    monkeypatch.setenv("GEMINI_LB_API_KEYS", "")
    get_settings.cache_clear()
    app = create_app()

    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            dashboard = await client.get("/api/gemini/dashboard")
            generate = await client.post("/api/gemini/generate", json={"prompt": "hi"})
            health = await client.get("/health")

    assert dashboard.status_code == 503
    assert dashboard.json()["error"]["code"] == "balancer_not_configured"
    assert generate.status_code == 503
    assert health.json() == {"status": "ok", "keys": 0}
