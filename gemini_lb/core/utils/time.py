from __future__ import annotations

from datetime import datetime, timezone


def from_epoch_seconds(value: int | float | None) -> datetime | None:
    # Zero means "never" for balancer timestamps.
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def epoch_iso(value: int | float | None) -> str | None:
    instant = from_epoch_seconds(value)
    return instant.isoformat() if instant is not None else None
