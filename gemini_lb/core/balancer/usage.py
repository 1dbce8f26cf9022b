from __future__ import annotations

from gemini_lb.core.balancer.types import KeyRecord, QuotaLimits


def reserve(record: KeyRecord, estimated_tokens: int, now: float) -> None:
    record.rpm_used += 1
    record.rpd_used += 1
    record.tpm_used += estimated_tokens
    record.last_used_at = now


def refund_tokens(
    record: KeyRecord,
    *,
    estimated_tokens: int,
    reserved_window_start: float,
    limits: QuotaLimits,
) -> None:
    _adjust_tokens(record, -estimated_tokens, reserved_window_start, limits)


def true_up(
    record: KeyRecord,
    *,
    estimated_tokens: int,
    actual_tokens: int,
    reserved_window_start: float,
    limits: QuotaLimits,
) -> None:
    """Replace the token estimate with the real cost and update lifetime totals.

    The request-count charge (rpm/rpd) is never refunded: a failed call reported
    with `actual_tokens=0` still consumed one request slot.
    """
    actual = max(0, int(actual_tokens))
    _adjust_tokens(record, actual - estimated_tokens, reserved_window_start, limits)
    record.total_requests += 1
    record.total_tokens += actual


def _adjust_tokens(record: KeyRecord, delta: int, reserved_window_start: float, limits: QuotaLimits) -> None:
    # A rollover since the reservation already wiped the estimate from tpm_used.
    if record.minute_window_start != reserved_window_start:
        return
    record.tpm_used = min(limits.tpm, max(0, record.tpm_used + delta))
