from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry
from prometheus_client.parser import text_string_to_metric_families

from gemini_lb.core.balancer import QuotaLimits, Reservation, Success
from gemini_lb.core.metrics.metrics import Metrics
from gemini_lb.modules.balancer.service import KeyBalancer

pytestmark = pytest.mark.unit


def _sample_value(text: str, metric_name: str, labels: dict[str, str] | None = None) -> float | None:
    target_labels = labels or {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name != metric_name:
                continue
            if all(sample.labels.get(k) == v for k, v in target_labels.items()):
                return float(sample.value)
    return None


def test_metrics_observes_balancer_events() -> None:
    metrics = Metrics(registry=CollectorRegistry(auto_describe=True))

    metrics.observe_acquire(outcome="selected")
    metrics.observe_acquire(outcome="cooldown")
    metrics.observe_outcome(outcome="success", estimated_tokens=120, actual_tokens=90)
    metrics.observe_persist(ok=False)
    metrics.observe_generate_latency(model="gemini-2.5-pro", status="ok", latency_ms=320)

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "gemini_lb_acquire_total", {"outcome": "selected"}) == 1.0
    assert _sample_value(rendered, "gemini_lb_acquire_total", {"outcome": "cooldown"}) == 1.0
    assert _sample_value(rendered, "gemini_lb_outcomes_total", {"outcome": "success"}) == 1.0
    assert _sample_value(rendered, "gemini_lb_tokens_total", {"kind": "estimated"}) == 120.0
    assert _sample_value(rendered, "gemini_lb_tokens_total", {"kind": "actual"}) == 90.0
    assert _sample_value(rendered, "gemini_lb_persist_total", {"result": "error"}) == 1.0
    assert (
        _sample_value(
            rendered,
            "gemini_lb_generate_latency_ms_count",
            {"model": "gemini-2.5-pro", "status": "ok"},
        )
        == 1.0
    )


@pytest.mark.asyncio
async def test_metrics_refreshes_key_gauges_and_drops_removed_keys() -> None:
    metrics = Metrics(registry=CollectorRegistry(auto_describe=True))
    limits = QuotaLimits(rpm=5, rpd=50, tpm=500)
    balancer = KeyBalancer(["gauge-a", "gauge-b"], limits, clock=lambda: 1_700_000_000.0)
    reservation = await balancer.acquire(40)
    assert isinstance(reservation, Reservation)
    await balancer.report_outcome(reservation, Success(actual_tokens=30))
    snapshot = await balancer.snapshot()
    first, second = snapshot.keys

    metrics.refresh_key_gauges(snapshot)

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "gemini_lb_key_usage", {"key": first.id_short, "dimension": "rpm"}) == 1.0
    assert _sample_value(rendered, "gemini_lb_key_usage", {"key": first.id_short, "dimension": "tpm"}) == 30.0
    assert _sample_value(rendered, "gemini_lb_key_total_requests", {"key": first.id_short}) == 1.0
    assert _sample_value(rendered, "gemini_lb_key_limit", {"dimension": "rpd"}) == 50.0
    assert _sample_value(rendered, "gemini_lb_rr_index") == 1.0

    smaller = await KeyBalancer(["gauge-a"], limits).snapshot()
    metrics.refresh_key_gauges(smaller)

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "gemini_lb_key_usage", {"key": second.id_short}) is None
    assert _sample_value(rendered, "gemini_lb_key_usage", {"key": first.id_short, "dimension": "rpm"}) == 0.0


@pytest.mark.asyncio
async def test_key_gauges_keep_colliding_short_ids_apart(monkeypatch) -> None:
    monkeypatch.setattr("gemini_lb.core.balancer.types.short_key_id", lambda key_id: "same-prefix")
    metrics = Metrics(registry=CollectorRegistry(auto_describe=True))
    balancer = KeyBalancer(["twin-a", "twin-b"], QuotaLimits(rpm=5, rpd=50, tpm=500), clock=lambda: 1_700_000_000.0)
    reservation = await balancer.acquire(0)
    assert isinstance(reservation, Reservation)

    metrics.refresh_key_gauges(await balancer.snapshot())

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "gemini_lb_key_usage", {"position": "0", "dimension": "rpm"}) == 1.0
    assert _sample_value(rendered, "gemini_lb_key_usage", {"position": "1", "dimension": "rpm"}) == 0.0

    metrics.refresh_key_gauges(await KeyBalancer(["twin-a"], QuotaLimits(rpm=5, rpd=50, tpm=500)).snapshot())

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "gemini_lb_key_usage", {"position": "1"}) is None
    assert _sample_value(rendered, "gemini_lb_key_usage", {"position": "0", "dimension": "rpm"}) == 0.0
