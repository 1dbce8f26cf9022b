from __future__ import annotations

from gemini_lb.core.balancer.types import KeyRecord

MINUTE_WINDOW_SECONDS = 60.0
DAY_WINDOW_SECONDS = 24 * 60 * 60.0


def refresh_windows(record: KeyRecord, now: float) -> bool:
    """Reset counters whose fixed window has elapsed.

    Windows are fixed, not sliding: an expired window restarts at `now` no matter
    how many boundaries were missed, so a record idle for days is reset once.
    Returns True when any counter was reset.
    """
    changed = False
    if now - record.minute_window_start >= MINUTE_WINDOW_SECONDS:
        record.minute_window_start = now
        record.rpm_used = 0
        record.tpm_used = 0
        changed = True
    if now - record.day_window_start >= DAY_WINDOW_SECONDS:
        record.day_window_start = now
        record.rpd_used = 0
        changed = True
    return changed


def next_minute_window_at(record: KeyRecord, now: float) -> float:
    boundary = record.minute_window_start + MINUTE_WINDOW_SECONDS
    return boundary if boundary > now else now


def next_day_window_at(record: KeyRecord, now: float) -> float:
    boundary = record.day_window_start + DAY_WINDOW_SECONDS
    return boundary if boundary > now else now + DAY_WINDOW_SECONDS
