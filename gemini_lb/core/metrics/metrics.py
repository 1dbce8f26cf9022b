from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from gemini_lb.core.balancer.types import BalancerSnapshot

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"
_KEY_DIMENSIONS: Final[tuple[str, ...]] = ("rpm", "rpd", "tpm")


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)
        self._known_keys: dict[int, str] = {}

        self._acquire_total = Counter(
            "gemini_lb_acquire_total",
            "Total acquire attempts by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._outcomes_total = Counter(
            "gemini_lb_outcomes_total",
            "Total reported reservation outcomes.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._tokens_total = Counter(
            "gemini_lb_tokens_total",
            "Total tokens charged by kind (estimated at reservation, actual at true-up).",
            labelnames=("kind",),
            registry=self._registry,
        )
        self._persist_total = Counter(
            "gemini_lb_persist_total",
            "Total balancer snapshot writes by result.",
            labelnames=("result",),
            registry=self._registry,
        )
        self._key_usage = Gauge(
            "gemini_lb_key_usage",
            "Current window usage per key and quota dimension.",
            labelnames=("position", "key", "dimension"),
            registry=self._registry,
        )
        self._key_limit = Gauge(
            "gemini_lb_key_limit",
            "Configured per-key limit per quota dimension.",
            labelnames=("dimension",),
            registry=self._registry,
        )
        self._key_total_requests = Gauge(
            "gemini_lb_key_total_requests",
            "Lifetime requests per key.",
            labelnames=("position", "key"),
            registry=self._registry,
        )
        self._rr_index = Gauge(
            "gemini_lb_rr_index",
            "Current round-robin cursor.",
            registry=self._registry,
        )
        self._generate_latency_ms = Histogram(
            "gemini_lb_generate_latency_ms",
            "Provider call latency in milliseconds.",
            labelnames=("model", "status"),
            # 50ms .. 5m
            buckets=(50, 100, 250, 500, 1_000, 2_000, 5_000, 10_000, 30_000, 60_000, 120_000, 300_000),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_acquire(self, *, outcome: str) -> None:
        self._acquire_total.labels(outcome=outcome or "unknown").inc()

    def observe_outcome(self, *, outcome: str, estimated_tokens: int, actual_tokens: int | None) -> None:
        self._outcomes_total.labels(outcome=outcome or "unknown").inc()
        if estimated_tokens > 0:
            self._tokens_total.labels(kind="estimated").inc(estimated_tokens)
        if actual_tokens:
            self._tokens_total.labels(kind="actual").inc(actual_tokens)

    def observe_persist(self, *, ok: bool) -> None:
        self._persist_total.labels(result="ok" if ok else "error").inc()

    def observe_generate_latency(self, *, model: str | None, status: str, latency_ms: float) -> None:
        self._generate_latency_ms.labels(model=model or "unknown", status=status or "unknown").observe(
            max(0.0, float(latency_ms))
        )

    def refresh_key_gauges(self, snapshot: BalancerSnapshot) -> None:
        self._rr_index.set(float(snapshot.rr_index))
        self._key_limit.labels(dimension="rpm").set(float(snapshot.limits.rpm))
        self._key_limit.labels(dimension="rpd").set(float(snapshot.limits.rpd))
        self._key_limit.labels(dimension="tpm").set(float(snapshot.limits.tpm))

        # Series are keyed by pool position; idShort is only a display label.
        current: dict[int, str] = {}
        for key in snapshot.keys:
            position = str(key.position)
            current[key.position] = key.id_short
            for dimension, used in zip(_KEY_DIMENSIONS, (key.rpm_used, key.rpd_used, key.tpm_used)):
                self._key_usage.labels(position=position, key=key.id_short, dimension=dimension).set(float(used))
            self._key_total_requests.labels(position=position, key=key.id_short).set(float(key.total_requests))

        for position, label in self._known_keys.items():
            if current.get(position) == label:
                continue
            for dimension in _KEY_DIMENSIONS:
                self._key_usage.remove(str(position), label, dimension)
            self._key_total_requests.remove(str(position), label)
        self._known_keys = current
