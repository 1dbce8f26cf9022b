from __future__ import annotations

from gemini_lb.core.balancer.types import FailureKind, KeyRecord
from gemini_lb.core.balancer.windows import next_day_window_at

RATE_LIMIT_COOLDOWN_SECONDS = 60.0
TRANSIENT_COOLDOWN_SECONDS = 5.0


def cooldown_seconds(record: KeyRecord, kind: FailureKind, now: float) -> float:
    match kind:
        case FailureKind.RATE_LIMITED:
            return RATE_LIMIT_COOLDOWN_SECONDS
        case FailureKind.QUOTA_EXHAUSTED:
            return next_day_window_at(record, now) - now
        case FailureKind.TRANSIENT:
            return TRANSIENT_COOLDOWN_SECONDS


def mark_failure(record: KeyRecord, kind: FailureKind, now: float) -> float:
    # No escalation: every failure restarts the fixed delay for its kind.
    record.cooldown_until = now + cooldown_seconds(record, kind, now)
    return record.cooldown_until


def is_available(record: KeyRecord, now: float) -> bool:
    return now >= record.cooldown_until
