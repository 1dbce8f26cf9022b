from __future__ import annotations

from collections.abc import Callable
from typing import AsyncContextManager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gemini_lb.core.balancer.types import KeyRecordState, PoolState
from gemini_lb.db.models import BalancerKeyState, BalancerPoolState

_POOL_ID = 1


class BalancerStateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def load(self) -> PoolState | None:
        pool = await self._session.get(BalancerPoolState, _POOL_ID)
        result = await self._session.execute(select(BalancerKeyState).order_by(BalancerKeyState.position))
        rows = list(result.scalars().all())
        if pool is None and not rows:
            return None
        return PoolState(
            rr_index=pool.rr_index if pool is not None else 0,
            keys=tuple(_to_state(row) for row in rows),
            persisted_at=(pool.persisted_at or None) if pool is not None else None,
        )

    async def save(self, state: PoolState) -> None:
        for key in state.keys:
            await self._session.merge(
                BalancerKeyState(
                    key_id=key.key_id,
                    position=key.position,
                    cooldown_until=key.cooldown_until,
                    minute_window_start=key.minute_window_start,
                    day_window_start=key.day_window_start,
                    last_used_at=key.last_used_at,
                    rpm_used=key.rpm_used,
                    rpd_used=key.rpd_used,
                    tpm_used=key.tpm_used,
                    total_requests=key.total_requests,
                    total_tokens=key.total_tokens,
                )
            )
        await self._session.merge(
            BalancerPoolState(
                id=_POOL_ID,
                rr_index=state.rr_index,
                persisted_at=state.persisted_at or 0.0,
            )
        )
        await self._session.commit()


def _to_state(row: BalancerKeyState) -> KeyRecordState:
    return KeyRecordState(
        key_id=row.key_id,
        position=row.position,
        cooldown_until=row.cooldown_until,
        minute_window_start=row.minute_window_start,
        day_window_start=row.day_window_start,
        rpm_used=row.rpm_used,
        rpd_used=row.rpd_used,
        tpm_used=row.tpm_used,
        last_used_at=row.last_used_at,
        total_requests=row.total_requests,
        total_tokens=row.total_tokens,
    )


BalancerRepoFactory = Callable[[], AsyncContextManager[BalancerStateRepository]]
