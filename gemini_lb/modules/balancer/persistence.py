from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gemini_lb.core.balancer.types import PoolState
from gemini_lb.core.config.settings import get_settings
from gemini_lb.core.metrics import get_metrics
from gemini_lb.db.session import _safe_close, _safe_rollback
from gemini_lb.modules.balancer.repository import BalancerRepoFactory, BalancerStateRepository
from gemini_lb.modules.balancer.service import KeyBalancer

logger = logging.getLogger(__name__)


def repo_factory_for(session_factory: async_sessionmaker[AsyncSession]) -> BalancerRepoFactory:
    @asynccontextmanager
    async def _repo_context() -> AsyncIterator[BalancerStateRepository]:
        session = session_factory()
        try:
            yield BalancerStateRepository(session)
        except BaseException:
            await _safe_rollback(session)
            raise
        finally:
            if session.in_transaction():
                await _safe_rollback(session)
            await _safe_close(session)

    return _repo_context


class PersistenceStore:
    """Durable copy of the pool. Failures are logged; callers keep running in memory."""

    def __init__(self, repo_factory: BalancerRepoFactory) -> None:
        self._repo_factory = repo_factory

    async def load(self) -> PoolState | None:
        try:
            async with self._repo_factory() as repo:
                return await repo.load()
        except Exception:
            logger.exception("balancer_state_load_failed")
            return None

    async def save(self, state: PoolState) -> bool:
        try:
            async with self._repo_factory() as repo:
                await repo.save(state)
        except Exception:
            logger.exception("balancer_state_save_failed keys=%s", len(state.keys))
            get_metrics().observe_persist(ok=False)
            return False
        get_metrics().observe_persist(ok=True)
        return True


@dataclass(slots=True)
class BalancerPersistScheduler:
    balancer: KeyBalancer
    store: PersistenceStore
    interval_seconds: float
    enabled: bool
    _task: asyncio.Task[None] | None = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _dirty: asyncio.Event = field(default_factory=asyncio.Event)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def mark_dirty(self) -> None:
        if self.enabled:
            self._dirty.set()

    @property
    def dirty(self) -> bool:
        return self._dirty.is_set()

    async def start(self) -> None:
        if not self.enabled:
            return
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        if self._task:
            self._stop.set()
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self.enabled:
            await self.flush()

    async def flush(self) -> bool:
        async with self._lock:
            self._dirty.clear()
            state = await self.balancer.export_state()
            ok = await self.store.save(state)
            if ok:
                self.balancer.mark_persisted(state.persisted_at)
            else:
                self._dirty.set()
            return ok

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            await self._dirty.wait()
            if self._stop.is_set():
                return
            try:
                await self.flush()
            except Exception:
                logger.exception("Balancer persist loop failed")
            # At most one write per interval; marks arriving meanwhile coalesce.
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


def build_persist_scheduler(balancer: KeyBalancer, store: PersistenceStore) -> BalancerPersistScheduler:
    settings = get_settings()
    scheduler = BalancerPersistScheduler(
        balancer=balancer,
        store=store,
        interval_seconds=settings.persist_interval_seconds,
        enabled=settings.persist_enabled,
    )
    balancer.subscribe(scheduler.mark_dirty)
    return scheduler
