from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class DebugEligibility(BaseModel):
    eligible: bool
    reason: str | None


class DebugLbKeyRow(BaseModel):
    key_id_short: str = Field(min_length=1, max_length=12)
    position: int
    status: str
    eligibility: DebugEligibility

    cooldown_until: datetime | None
    cooldown_remaining_seconds: float
    minute_window_start: datetime | None
    day_window_start: datetime | None
    last_used_at: datetime | None

    rpm_used: int
    rpd_used: int
    tpm_used: int
    total_requests: int
    total_tokens: int


class DebugLbLimits(BaseModel):
    rpm: int
    rpd: int
    tpm: int


class DebugLbStateResponse(BaseModel):
    generated_at: datetime
    selector: str
    rr_index: int
    next_key_id_short: str
    outstanding_reservations: int
    last_persist_at: datetime | None
    limits: DebugLbLimits
    keys: list[DebugLbKeyRow]
