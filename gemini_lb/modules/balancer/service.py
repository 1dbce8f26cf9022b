from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from uuid import uuid4

from gemini_lb.core.balancer import (
    AllKeysUnavailable,
    BalancerSnapshot,
    KeyRecord,
    KeyRecordState,
    KeySelector,
    KeyUsageView,
    Outcome,
    PoolState,
    QuotaLimits,
    Reservation,
    RoundRobinSelector,
    Success,
    build_selector,
    failure_kind,
    ineligibility_reason,
    key_status,
    mark_failure,
    refresh_windows,
    refund_tokens,
    reserve,
    true_up,
    unavailable_result,
)
from gemini_lb.core.config.settings import Settings
from gemini_lb.core.metrics import get_metrics
from gemini_lb.core.utils.request_id import get_request_id
from gemini_lb.core.utils.time import epoch_iso

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
ChangeListener = Callable[[], None]


@dataclass(frozen=True, slots=True)
class KeyDebugRow:
    view: KeyUsageView
    reason: str | None


@dataclass(frozen=True, slots=True)
class BalancerDebugDump:
    snapshot: BalancerSnapshot
    selector: str
    outstanding_reservations: int
    rows: tuple[KeyDebugRow, ...]


class KeyBalancer:
    """Admission control over an ordered pool of provider credentials.

    Every read and write of the pool happens inside one asyncio lock; callers
    perform the provider call between `acquire` and `report_outcome` without
    holding it. Listeners are notified outside the lock after each mutation.
    """

    def __init__(
        self,
        api_keys: Sequence[str],
        limits: QuotaLimits,
        *,
        selector: KeySelector | None = None,
        clock: Clock = time.time,
        max_outstanding: int = 10_000,
    ) -> None:
        if not api_keys:
            raise ValueError("KeyBalancer requires at least one API key")
        records = [KeyRecord.for_api_key(key) for key in api_keys]
        positions = {record.key_id: position for position, record in enumerate(records)}
        if len(positions) != len(records):
            raise ValueError("Duplicate API keys in pool")

        self._records = records
        self._positions = positions
        self._limits = limits
        self._selector = selector or RoundRobinSelector()
        self._clock = clock
        self._max_outstanding = max_outstanding
        self._rr_index = 0
        self._lock = asyncio.Lock()
        self._outstanding: OrderedDict[str, Reservation] = OrderedDict()
        self._last_persist_at: float | None = None
        self._listeners: list[ChangeListener] = []

    @property
    def size(self) -> int:
        return len(self._records)

    @property
    def limits(self) -> QuotaLimits:
        return self._limits

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def acquire(self, estimated_tokens: int = 0) -> Reservation | AllKeysUnavailable:
        estimated = max(0, int(estimated_tokens))
        evicted: Reservation | None = None
        async with self._lock:
            now = self._clock()
            position = self._selector.select(self._records, self._rr_index, self._limits, estimated, now)
            if position is None:
                unavailable = unavailable_result(self._records, self._limits, estimated_tokens=estimated, now=now)
            else:
                record = self._records[position]
                reserve(record, estimated, now)
                self._rr_index = (position + 1) % len(self._records)
                reservation = Reservation(
                    reservation_id=uuid4().hex,
                    key_id=record.key_id,
                    api_key=record.api_key,
                    position=position,
                    estimated_tokens=estimated,
                    reserved_at=now,
                    minute_window_start=record.minute_window_start,
                )
                self._outstanding[reservation.reservation_id] = reservation
                if len(self._outstanding) > self._max_outstanding:
                    _, evicted = self._outstanding.popitem(last=False)

        if position is None:
            get_metrics().observe_acquire(outcome=unavailable.reason_code)
            logger.info(
                "lb_select outcome=unavailable reason=%s estimated_tokens=%s retry_after=%s request_id=%s",
                unavailable.reason_code,
                estimated,
                f"{unavailable.retry_after_seconds:.1f}" if unavailable.retry_after_seconds is not None else None,
                get_request_id(),
            )
            return unavailable

        if evicted is not None:
            logger.warning(
                "lb_reservation_evicted key=%s reserved_at=%s max_outstanding=%s",
                evicted.id_short,
                epoch_iso(evicted.reserved_at),
                self._max_outstanding,
            )
        get_metrics().observe_acquire(outcome="ok")
        logger.debug(
            "lb_select outcome=ok key=%s position=%s estimated_tokens=%s request_id=%s",
            reservation.id_short,
            position,
            estimated,
            get_request_id(),
        )
        self._notify()
        return reservation

    async def report_outcome(self, reservation: Reservation, outcome: Outcome) -> bool:
        """Settle a reservation. Returns False when it was unknown or already settled."""
        cooldown_until: float | None = None
        async with self._lock:
            tracked = self._outstanding.pop(reservation.reservation_id, None)
            if tracked is not None:
                now = self._clock()
                record = self._records[tracked.position]
                refresh_windows(record, now)
                kind = failure_kind(outcome)
                actual = outcome.actual_tokens if isinstance(outcome, Success) else 0
                true_up(
                    record,
                    estimated_tokens=tracked.estimated_tokens,
                    actual_tokens=actual,
                    reserved_window_start=tracked.minute_window_start,
                    limits=self._limits,
                )
                if kind is not None:
                    cooldown_until = mark_failure(record, kind, now)

        if tracked is None:
            logger.info(
                "lb_outcome_ignored key=%s reservation=%s request_id=%s",
                reservation.id_short,
                reservation.reservation_id,
                get_request_id(),
            )
            return False

        outcome_name = kind.value if kind is not None else "success"
        get_metrics().observe_outcome(
            outcome=outcome_name,
            estimated_tokens=tracked.estimated_tokens,
            actual_tokens=actual,
        )
        if cooldown_until is not None:
            logger.info(
                "lb_mark event=%s key=%s cooldown_until=%s message=%s request_id=%s",
                outcome_name,
                tracked.id_short,
                epoch_iso(cooldown_until),
                getattr(outcome, "message", None),
                get_request_id(),
            )
        self._notify()
        return True

    async def abandon(self, reservation: Reservation) -> bool:
        """Refund the token estimate of a reservation that will never be reported."""
        async with self._lock:
            tracked = self._outstanding.pop(reservation.reservation_id, None)
            if tracked is not None:
                record = self._records[tracked.position]
                refresh_windows(record, self._clock())
                refund_tokens(
                    record,
                    estimated_tokens=tracked.estimated_tokens,
                    reserved_window_start=tracked.minute_window_start,
                    limits=self._limits,
                )
        if tracked is None:
            logger.info("lb_abandon_ignored key=%s reservation=%s", reservation.id_short, reservation.reservation_id)
            return False
        get_metrics().observe_outcome(outcome="abandoned", estimated_tokens=0, actual_tokens=None)
        self._notify()
        return True

    async def snapshot(self) -> BalancerSnapshot:
        async with self._lock:
            return self._snapshot_locked(self._clock())

    async def debug_dump(self, estimated_tokens: int = 0) -> BalancerDebugDump:
        async with self._lock:
            now = self._clock()
            snapshot = self._snapshot_locked(now)
            reasons = [
                ineligibility_reason(record, self._limits, now=now, estimated_tokens=estimated_tokens)
                for record in self._records
            ]
            outstanding = len(self._outstanding)
        return BalancerDebugDump(
            snapshot=snapshot,
            selector=self._selector.name,
            outstanding_reservations=outstanding,
            rows=tuple(KeyDebugRow(view=view, reason=reason) for view, reason in zip(snapshot.keys, reasons)),
        )

    async def export_state(self) -> PoolState:
        async with self._lock:
            now = self._clock()
            keys = tuple(
                KeyRecordState(
                    key_id=record.key_id,
                    position=position,
                    cooldown_until=record.cooldown_until,
                    minute_window_start=record.minute_window_start,
                    day_window_start=record.day_window_start,
                    rpm_used=record.rpm_used,
                    rpd_used=record.rpd_used,
                    tpm_used=record.tpm_used,
                    last_used_at=record.last_used_at,
                    total_requests=record.total_requests,
                    total_tokens=record.total_tokens,
                )
                for position, record in enumerate(self._records)
            )
            return PoolState(rr_index=self._rr_index, keys=keys, persisted_at=now)

    async def restore(self, state: PoolState) -> int:
        """Apply persisted state by credential id. Returns the number of keys restored."""
        restored = 0
        async with self._lock:
            for saved in state.keys:
                position = self._positions.get(saved.key_id)
                if position is None:
                    continue
                record = self._records[position]
                record.cooldown_until = saved.cooldown_until
                record.minute_window_start = saved.minute_window_start
                record.day_window_start = saved.day_window_start
                # Limits may have been lowered since the snapshot was taken.
                record.rpm_used = min(max(0, saved.rpm_used), self._limits.rpm)
                record.rpd_used = min(max(0, saved.rpd_used), self._limits.rpd)
                record.tpm_used = min(max(0, saved.tpm_used), self._limits.tpm)
                record.last_used_at = saved.last_used_at
                record.total_requests = saved.total_requests
                record.total_tokens = saved.total_tokens
                restored += 1
            self._rr_index = state.rr_index % len(self._records)
            if state.persisted_at is not None:
                self._last_persist_at = state.persisted_at
        logger.info(
            "lb_restore keys=%s/%s skipped=%s rr_index=%s persisted_at=%s",
            restored,
            len(self._records),
            len(state.keys) - restored,
            self._rr_index,
            epoch_iso(state.persisted_at or 0),
        )
        return restored

    def mark_persisted(self, persisted_at: float | None) -> None:
        if persisted_at is not None:
            self._last_persist_at = persisted_at

    def _snapshot_locked(self, now: float) -> BalancerSnapshot:
        views: list[KeyUsageView] = []
        for position, record in enumerate(self._records):
            current = replace(record)
            refresh_windows(current, now)
            views.append(
                KeyUsageView(
                    id_short=current.id_short,
                    position=position,
                    status=key_status(record, self._limits, now=now),
                    cooldown_until=current.cooldown_until,
                    minute_window_start=current.minute_window_start,
                    day_window_start=current.day_window_start,
                    rpm_used=current.rpm_used,
                    rpd_used=current.rpd_used,
                    tpm_used=current.tpm_used,
                    last_used_at=current.last_used_at,
                    total_requests=current.total_requests,
                    total_tokens=current.total_tokens,
                )
            )
        return BalancerSnapshot(
            rr_index=self._rr_index,
            keys=tuple(views),
            limits=self._limits,
            last_persist_at=self._last_persist_at,
            taken_at=now,
        )

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception:
                logger.exception("Balancer change listener failed")


def build_key_balancer(settings: Settings, *, clock: Clock = time.time) -> KeyBalancer | None:
    if not settings.api_keys:
        return None
    limits = QuotaLimits(rpm=settings.limit_rpm, rpd=settings.limit_rpd, tpm=settings.limit_tpm)
    return KeyBalancer(
        settings.api_keys,
        limits,
        selector=build_selector(settings.selection_strategy),
        clock=clock,
        max_outstanding=settings.max_outstanding_reservations,
    )
