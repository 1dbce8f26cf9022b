from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import Field

from gemini_lb.core.balancer.types import BalancerSnapshot, KeyStatus, KeyUsageView, QuotaLimits
from gemini_lb.core.utils.time import from_epoch_seconds
from gemini_lb.modules.balancer.load_test import SyntheticLoadReport
from gemini_lb.modules.shared.schemas import DashboardModel


class LimitsResponse(DashboardModel):
    rpm: int = Field(alias="RPM")
    rpd: int = Field(alias="RPD")
    tpm: int = Field(alias="TPM")

    @classmethod
    def from_limits(cls, limits: QuotaLimits) -> LimitsResponse:
        return cls(rpm=limits.rpm, rpd=limits.rpd, tpm=limits.tpm)


class KeyUsageResponse(DashboardModel):
    id_short: str
    status: KeyStatus
    cooldown_until: datetime | None = None
    minute_window_start: datetime | None = None
    day_window_start: datetime | None = None
    rpm_used: int
    rpd_used: int
    tpm_used: int
    last_used_at: datetime | None = None
    total_requests: int
    total_tokens: int

    @classmethod
    def from_view(cls, view: KeyUsageView) -> KeyUsageResponse:
        return cls(
            id_short=view.id_short,
            status=view.status,
            cooldown_until=from_epoch_seconds(view.cooldown_until),
            minute_window_start=from_epoch_seconds(view.minute_window_start),
            day_window_start=from_epoch_seconds(view.day_window_start),
            rpm_used=view.rpm_used,
            rpd_used=view.rpd_used,
            tpm_used=view.tpm_used,
            last_used_at=from_epoch_seconds(view.last_used_at),
            total_requests=view.total_requests,
            total_tokens=view.total_tokens,
        )


class DashboardResponse(DashboardModel):
    rr_index: int
    keys: List[KeyUsageResponse] = Field(default_factory=list)
    limits: LimitsResponse
    last_persist_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: BalancerSnapshot) -> DashboardResponse:
        return cls(
            rr_index=snapshot.rr_index,
            keys=[KeyUsageResponse.from_view(view) for view in snapshot.keys],
            limits=LimitsResponse.from_limits(snapshot.limits),
            last_persist_at=from_epoch_seconds(snapshot.last_persist_at),
        )


class LoadTestRequest(DashboardModel):
    count: int = Field(default=10, ge=1)
    model: str | None = None
    dry_run: bool = True


class DistributionEntry(DashboardModel):
    key_id_short: str
    requests: int


class ResultSample(DashboardModel):
    ok: bool
    key_id_short: str | None = None
    error: str | None = None


class LoadTestResponse(DashboardModel):
    count: int
    model: str
    dry_run: bool
    distribution: List[DistributionEntry] = Field(default_factory=list)
    results_sample: List[ResultSample] = Field(default_factory=list)
    usage: DashboardResponse

    @classmethod
    def from_report(cls, report: SyntheticLoadReport) -> LoadTestResponse:
        return cls(
            count=report.count,
            model=report.model,
            dry_run=report.dry_run,
            distribution=[
                DistributionEntry(key_id_short=entry.key_id_short, requests=entry.requests)
                for entry in report.distribution
            ],
            results_sample=[
                ResultSample(ok=result.ok, key_id_short=result.key_id_short, error=result.error)
                for result in report.results_sample
            ],
            usage=DashboardResponse.from_snapshot(report.usage),
        )
