from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from gemini_lb.core.config.settings import get_settings
from gemini_lb.core.utils.time import from_epoch_seconds
from gemini_lb.dependencies import get_balancer
from gemini_lb.modules.balancer.service import KeyBalancer
from gemini_lb.modules.debug.schemas import (
    DebugEligibility,
    DebugLbKeyRow,
    DebugLbLimits,
    DebugLbStateResponse,
)

router = APIRouter(tags=["debug"], include_in_schema=False)

UTC = timezone.utc


def _require_debug_enabled() -> None:
    if not get_settings().debug_endpoints_enabled:
        raise HTTPException(status_code=404)


@router.get(
    "/debug/lb/state",
    response_model=DebugLbStateResponse,
    dependencies=[Depends(_require_debug_enabled)],
)
async def debug_lb_state(
    estimated_tokens: int = Query(0, ge=0, alias="estimatedTokens"),
    balancer: KeyBalancer = Depends(get_balancer),
) -> DebugLbStateResponse:
    dump = await balancer.debug_dump(estimated_tokens)
    snapshot = dump.snapshot
    now = snapshot.taken_at

    keys: list[DebugLbKeyRow] = []
    for row in dump.rows:
        view = row.view
        keys.append(
            DebugLbKeyRow(
                key_id_short=view.id_short,
                position=view.position,
                status=view.status.value,
                eligibility=DebugEligibility(eligible=row.reason is None, reason=row.reason),
                cooldown_until=from_epoch_seconds(view.cooldown_until),
                cooldown_remaining_seconds=round(max(0.0, view.cooldown_until - now), 3),
                minute_window_start=from_epoch_seconds(view.minute_window_start),
                day_window_start=from_epoch_seconds(view.day_window_start),
                last_used_at=from_epoch_seconds(view.last_used_at),
                rpm_used=view.rpm_used,
                rpd_used=view.rpd_used,
                tpm_used=view.tpm_used,
                total_requests=view.total_requests,
                total_tokens=view.total_tokens,
            )
        )

    return DebugLbStateResponse(
        generated_at=datetime.fromtimestamp(now, tz=UTC),
        selector=dump.selector,
        rr_index=snapshot.rr_index,
        next_key_id_short=snapshot.keys[snapshot.rr_index].id_short,
        outstanding_reservations=dump.outstanding_reservations,
        last_persist_at=from_epoch_seconds(snapshot.last_persist_at),
        limits=DebugLbLimits(rpm=snapshot.limits.rpm, rpd=snapshot.limits.rpd, tpm=snapshot.limits.tpm),
        keys=keys,
    )
