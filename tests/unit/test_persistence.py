from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gemini_lb.core.balancer import KeyStatus, PoolState, QuotaLimits, RateLimited, Reservation, Success
from gemini_lb.db.session import build_engine, create_schema
from gemini_lb.modules.balancer.persistence import BalancerPersistScheduler, PersistenceStore, repo_factory_for
from gemini_lb.modules.balancer.service import KeyBalancer

pytestmark = pytest.mark.unit

START = 1_700_000_000.0
KEYS = ["persist-a", "persist-b", "persist-c"]
LIMITS = QuotaLimits(rpm=2, rpd=100, tpm=10_000)


class FakeClock:
    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingStore:
    def __init__(self, *, ok: bool = True) -> None:
        self.ok = ok
        self.saved: list[PoolState] = []

    async def save(self, state: PoolState) -> bool:
        self.saved.append(state)
        return self.ok


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'balancer.db'}")
    await create_schema(engine)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        yield PersistenceStore(repo_factory_for(session_factory))
    finally:
        await engine.dispose()


async def _acquire(balancer: KeyBalancer, estimated_tokens: int = 0) -> Reservation:
    result = await balancer.acquire(estimated_tokens)
    assert isinstance(result, Reservation)
    return result


@pytest.mark.asyncio
async def test_empty_store_loads_nothing(store: PersistenceStore) -> None:
    assert await store.load() is None


@pytest.mark.asyncio
async def test_round_trip_restores_counters_and_cursor(store: PersistenceStore) -> None:
    clock = FakeClock()
    running = KeyBalancer(KEYS, LIMITS, clock=clock)
    first = await _acquire(running, 120)
    await running.report_outcome(first, Success(actual_tokens=90))
    second = await _acquire(running, 50)
    await running.report_outcome(second, RateLimited())

    assert await store.save(await running.export_state()) is True

    restored = KeyBalancer(KEYS, LIMITS, clock=clock)
    state = await store.load()
    assert state is not None
    assert await restored.restore(state) == len(KEYS)

    before = await running.snapshot()
    after = await restored.snapshot()
    assert after.rr_index == before.rr_index == 2
    assert after.keys == before.keys
    assert after.last_persist_at == START


@pytest.mark.asyncio
async def test_restart_after_window_gap_resets_counters(store: PersistenceStore) -> None:
    clock = FakeClock()
    running = KeyBalancer(["only"], LIMITS, clock=clock)
    await _acquire(running)
    await _acquire(running)
    assert await store.save(await running.export_state())

    clock.now += 61
    restored = KeyBalancer(["only"], LIMITS, clock=clock)
    state = await store.load()
    assert state is not None
    await restored.restore(state)
    await _acquire(restored)

    key = (await restored.snapshot()).keys[0]
    assert key.rpm_used == 1
    assert key.rpd_used == 3
    assert key.minute_window_start == clock.now


@pytest.mark.asyncio
async def test_restore_matches_keys_by_identity_not_position(store: PersistenceStore) -> None:
    clock = FakeClock()
    running = KeyBalancer(["x", "y"], LIMITS, clock=clock)
    await _acquire(running)
    await store.save(await running.export_state())

    reordered = KeyBalancer(["new", "y", "x"], LIMITS, clock=clock)
    state = await store.load()
    assert state is not None
    assert await reordered.restore(state) == 2

    snapshot = await reordered.snapshot()
    assert [key.rpd_used for key in snapshot.keys] == [0, 0, 1]
    assert snapshot.rr_index == 1


@pytest.mark.asyncio
async def test_restore_clamps_counters_to_lowered_limits(store: PersistenceStore) -> None:
    clock = FakeClock()
    generous = KeyBalancer(["only"], QuotaLimits(rpm=50, rpd=1000, tpm=10_000), clock=clock)
    for _ in range(5):
        await generous.report_outcome(await _acquire(generous, 500), Success(actual_tokens=500))
    await store.save(await generous.export_state())

    strict_limits = QuotaLimits(rpm=2, rpd=3, tpm=100)
    strict = KeyBalancer(["only"], strict_limits, clock=clock)
    state = await store.load()
    assert state is not None
    await strict.restore(state)

    key = (await strict.snapshot()).keys[0]
    assert (key.rpm_used, key.rpd_used, key.tpm_used) == (2, 3, 100)
    assert key.total_requests == 5
    assert key.total_tokens == 2500
    assert key.status is KeyStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_load_failure_degrades_to_none() -> None:
    @asynccontextmanager
    async def broken_factory():
        raise RuntimeError("disk on fire")
        yield  # pragma: no cover

    store = PersistenceStore(broken_factory)

    assert await store.load() is None
    assert await store.save(PoolState(rr_index=0, keys=())) is False


@pytest.mark.asyncio
async def test_scheduler_coalesces_marks_and_flushes_on_stop() -> None:
    balancer = KeyBalancer(KEYS, LIMITS, clock=FakeClock())
    recording = RecordingStore()
    scheduler = BalancerPersistScheduler(balancer=balancer, store=recording, interval_seconds=30.0, enabled=True)
    balancer.subscribe(scheduler.mark_dirty)

    await scheduler.start()
    await _acquire(balancer)
    await asyncio.sleep(0.05)
    assert len(recording.saved) == 1

    for _ in range(5):
        await _acquire(balancer)
    await asyncio.sleep(0.05)
    assert len(recording.saved) == 1
    assert scheduler.dirty

    await scheduler.stop()

    assert len(recording.saved) == 2
    assert sum(key.rpd_used for key in recording.saved[-1].keys) == 6
    assert (await balancer.snapshot()).last_persist_at == START


@pytest.mark.asyncio
async def test_failed_write_keeps_state_dirty() -> None:
    balancer = KeyBalancer(KEYS, LIMITS, clock=FakeClock())
    scheduler = BalancerPersistScheduler(
        balancer=balancer,
        store=RecordingStore(ok=False),
        interval_seconds=30.0,
        enabled=True,
    )

    assert await scheduler.flush() is False

    assert scheduler.dirty
    assert (await balancer.snapshot()).last_persist_at is None


@pytest.mark.asyncio
async def test_disabled_scheduler_never_writes() -> None:
    balancer = KeyBalancer(KEYS, LIMITS, clock=FakeClock())
    recording = RecordingStore()
    scheduler = BalancerPersistScheduler(balancer=balancer, store=recording, interval_seconds=0.01, enabled=False)
    balancer.subscribe(scheduler.mark_dirty)

    await scheduler.start()
    await _acquire(balancer)
    await scheduler.stop()

    assert recording.saved == []
    assert not scheduler.dirty
