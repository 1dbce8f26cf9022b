from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

ID_SHORT_LENGTH = 12


class KeyStatus(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    EXHAUSTED = "exhausted"


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    TRANSIENT = "transient"


def key_id_for(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def short_key_id(key_id: str) -> str:
    return key_id[:ID_SHORT_LENGTH]


@dataclass(frozen=True, slots=True)
class QuotaLimits:
    rpm: int
    rpd: int
    tpm: int

    def __post_init__(self) -> None:
        if self.rpm <= 0 or self.rpd <= 0 or self.tpm <= 0:
            raise ValueError("Quota limits must be positive")


@dataclass(slots=True)
class KeyRecord:
    """Mutable per-credential state. Owned by the balancer; never handed out."""

    key_id: str
    api_key: str = field(repr=False)
    cooldown_until: float = 0.0
    minute_window_start: float = 0.0
    day_window_start: float = 0.0
    rpm_used: int = 0
    rpd_used: int = 0
    tpm_used: int = 0
    last_used_at: float = 0.0
    total_requests: int = 0
    total_tokens: int = 0

    @classmethod
    def for_api_key(cls, api_key: str) -> KeyRecord:
        return cls(key_id=key_id_for(api_key), api_key=api_key)

    @property
    def id_short(self) -> str:
        return short_key_id(self.key_id)


@dataclass(frozen=True, slots=True)
class KeyRecordState:
    """Persistable copy of a KeyRecord, without the credential itself."""

    key_id: str
    position: int
    cooldown_until: float
    minute_window_start: float
    day_window_start: float
    rpm_used: int
    rpd_used: int
    tpm_used: int
    last_used_at: float
    total_requests: int
    total_tokens: int


@dataclass(frozen=True, slots=True)
class PoolState:
    rr_index: int
    keys: tuple[KeyRecordState, ...]
    persisted_at: float | None = None


@dataclass(frozen=True, slots=True)
class Reservation:
    reservation_id: str
    key_id: str
    api_key: str = field(repr=False)
    position: int = 0
    estimated_tokens: int = 0
    reserved_at: float = 0.0
    minute_window_start: float = 0.0

    @property
    def id_short(self) -> str:
        return short_key_id(self.key_id)


@dataclass(frozen=True, slots=True)
class AllKeysUnavailable:
    message: str
    reason_code: str
    retry_after_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class Success:
    actual_tokens: int


@dataclass(frozen=True, slots=True)
class RateLimited:
    message: str | None = None


@dataclass(frozen=True, slots=True)
class QuotaExhausted:
    message: str | None = None


@dataclass(frozen=True, slots=True)
class TransientError:
    message: str | None = None


Outcome = Union[Success, RateLimited, QuotaExhausted, TransientError]


def failure_kind(outcome: Outcome) -> FailureKind | None:
    match outcome:
        case RateLimited():
            return FailureKind.RATE_LIMITED
        case QuotaExhausted():
            return FailureKind.QUOTA_EXHAUSTED
        case TransientError():
            return FailureKind.TRANSIENT
        case _:
            return None


@dataclass(frozen=True, slots=True)
class KeyUsageView:
    id_short: str
    position: int
    status: KeyStatus
    cooldown_until: float
    minute_window_start: float
    day_window_start: float
    rpm_used: int
    rpd_used: int
    tpm_used: int
    last_used_at: float
    total_requests: int
    total_tokens: int


@dataclass(frozen=True, slots=True)
class BalancerSnapshot:
    rr_index: int
    keys: tuple[KeyUsageView, ...]
    limits: QuotaLimits
    last_persist_at: float | None
    taken_at: float
