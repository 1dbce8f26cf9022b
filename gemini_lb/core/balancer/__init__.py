from gemini_lb.core.balancer.cooldown import cooldown_seconds, is_available, mark_failure
from gemini_lb.core.balancer.debug import ineligibility_reason, key_status, unavailable_result
from gemini_lb.core.balancer.selection import (
    KeySelector,
    LeastRecentlyUsedSelector,
    RoundRobinSelector,
    build_selector,
    is_admissible,
)
from gemini_lb.core.balancer.types import (
    AllKeysUnavailable,
    BalancerSnapshot,
    FailureKind,
    KeyRecord,
    KeyRecordState,
    KeyStatus,
    KeyUsageView,
    Outcome,
    PoolState,
    QuotaExhausted,
    QuotaLimits,
    RateLimited,
    Reservation,
    Success,
    TransientError,
    failure_kind,
    key_id_for,
    short_key_id,
)
from gemini_lb.core.balancer.usage import refund_tokens, reserve, true_up
from gemini_lb.core.balancer.windows import (
    DAY_WINDOW_SECONDS,
    MINUTE_WINDOW_SECONDS,
    refresh_windows,
)

__all__ = [
    "DAY_WINDOW_SECONDS",
    "MINUTE_WINDOW_SECONDS",
    "AllKeysUnavailable",
    "BalancerSnapshot",
    "FailureKind",
    "KeyRecord",
    "KeyRecordState",
    "KeySelector",
    "KeyStatus",
    "KeyUsageView",
    "LeastRecentlyUsedSelector",
    "Outcome",
    "PoolState",
    "QuotaExhausted",
    "QuotaLimits",
    "RateLimited",
    "Reservation",
    "RoundRobinSelector",
    "Success",
    "TransientError",
    "build_selector",
    "cooldown_seconds",
    "failure_kind",
    "ineligibility_reason",
    "is_admissible",
    "is_available",
    "key_id_for",
    "key_status",
    "mark_failure",
    "refresh_windows",
    "refund_tokens",
    "reserve",
    "short_key_id",
    "true_up",
    "unavailable_result",
]
