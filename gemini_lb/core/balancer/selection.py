from __future__ import annotations

from typing import Protocol, Sequence

from gemini_lb.core.balancer.cooldown import is_available
from gemini_lb.core.balancer.types import KeyRecord, QuotaLimits
from gemini_lb.core.balancer.windows import refresh_windows


def is_admissible(record: KeyRecord, limits: QuotaLimits, estimated_tokens: int, now: float) -> bool:
    return (
        is_available(record, now)
        and record.rpm_used < limits.rpm
        and record.rpd_used < limits.rpd
        and record.tpm_used + estimated_tokens <= limits.tpm
    )


class KeySelector(Protocol):
    name: str

    def select(
        self,
        records: Sequence[KeyRecord],
        cursor: int,
        limits: QuotaLimits,
        estimated_tokens: int,
        now: float,
    ) -> int | None: ...


class RoundRobinSelector:
    """First admissible record reached from the cursor wins.

    Bounded fairness: with N keys no admissible key waits more than N-1 selections.
    """

    name = "round_robin"

    def select(
        self,
        records: Sequence[KeyRecord],
        cursor: int,
        limits: QuotaLimits,
        estimated_tokens: int,
        now: float,
    ) -> int | None:
        size = len(records)
        for offset in range(size):
            position = (cursor + offset) % size
            record = records[position]
            refresh_windows(record, now)
            if is_admissible(record, limits, estimated_tokens, now):
                return position
        return None


class LeastRecentlyUsedSelector:
    name = "least_recently_used"

    def select(
        self,
        records: Sequence[KeyRecord],
        cursor: int,
        limits: QuotaLimits,
        estimated_tokens: int,
        now: float,
    ) -> int | None:
        size = len(records)
        best: int | None = None
        for offset in range(size):
            position = (cursor + offset) % size
            record = records[position]
            refresh_windows(record, now)
            if not is_admissible(record, limits, estimated_tokens, now):
                continue
            # Strict comparison keeps round-robin order among equally stale keys.
            if best is None or record.last_used_at < records[best].last_used_at:
                best = position
        return best


def build_selector(strategy: str) -> KeySelector:
    match strategy:
        case "round_robin":
            return RoundRobinSelector()
        case "least_recently_used":
            return LeastRecentlyUsedSelector()
        case _:
            raise ValueError(f"Unknown selection strategy: {strategy}")
