from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from gemini_lb.core.balancer.types import AllKeysUnavailable, KeyRecord, KeyStatus, QuotaLimits
from gemini_lb.core.balancer.windows import next_day_window_at, next_minute_window_at, refresh_windows


def ineligibility_reason(
    record: KeyRecord,
    limits: QuotaLimits,
    *,
    now: float,
    estimated_tokens: int = 0,
) -> str | None:
    """Why `record` cannot be selected right now; evaluated on a refreshed copy."""
    current = replace(record)
    refresh_windows(current, now)

    if now < current.cooldown_until:
        return "cooldown"
    if current.rpd_used >= limits.rpd:
        return "rpd_limit"
    if current.rpm_used >= limits.rpm:
        return "rpm_limit"
    if current.tpm_used + estimated_tokens > limits.tpm:
        return "tpm_limit"
    return None


def key_status(record: KeyRecord, limits: QuotaLimits, *, now: float) -> KeyStatus:
    match ineligibility_reason(record, limits, now=now):
        case None:
            return KeyStatus.ACTIVE
        case "cooldown":
            return KeyStatus.COOLDOWN
        case _:
            return KeyStatus.EXHAUSTED


def unavailable_result(
    records: Sequence[KeyRecord],
    limits: QuotaLimits,
    *,
    estimated_tokens: int,
    now: float,
) -> AllKeysUnavailable:
    if estimated_tokens > limits.tpm:
        return AllKeysUnavailable(
            message=f"Request needs ~{estimated_tokens} tokens but the per-key limit is {limits.tpm} tokens/minute",
            reason_code="request_too_large",
            retry_after_seconds=None,
        )

    ready_at: list[float] = []
    all_cooling = True
    for record in records:
        reason = ineligibility_reason(record, limits, now=now, estimated_tokens=estimated_tokens)
        if reason != "cooldown":
            all_cooling = False
        at = _admissible_again_at(record, reason, now)
        if at is not None:
            ready_at.append(at)

    wait_seconds = max(0.0, min(ready_at) - now) if ready_at else None
    message = "All API keys are rate-limited or exhausted."
    if wait_seconds is not None:
        message = f"{message} Try again in {wait_seconds:.0f}s"
    return AllKeysUnavailable(
        message=message,
        reason_code="cooldown" if all_cooling and records else "quota_exceeded",
        retry_after_seconds=wait_seconds,
    )


def _admissible_again_at(record: KeyRecord, reason: str | None, now: float) -> float | None:
    current = replace(record)
    refresh_windows(current, now)
    match reason:
        case None:
            return now
        case "cooldown":
            return current.cooldown_until
        case "rpd_limit":
            return next_day_window_at(current, now)
        case "rpm_limit" | "tpm_limit":
            return next_minute_window_at(current, now)
        case _:
            return None
