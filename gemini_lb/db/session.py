from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Awaitable, TypeVar

import anyio
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gemini_lb.core.config.settings import get_settings
from gemini_lb.db.models import Base

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 5_000
_SQLITE_BUSY_TIMEOUT_SECONDS = _SQLITE_BUSY_TIMEOUT_MS / 1000

_T = TypeVar("_T")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite:") or url.startswith("sqlite:")


def sqlite_db_path_from_url(url: str) -> Path | None:
    if not _is_sqlite_url(url):
        return None
    marker = ":///"
    marker_index = url.find(marker)
    if marker_index < 0:
        return None
    # Relative (sqlite+aiosqlite:///./store.db) and absolute (sqlite+aiosqlite:////var/lib/x.db) paths.
    path = url[marker_index + len(marker) :].partition("?")[0].partition("#")[0]
    if not path or path == ":memory:":
        return None
    return Path(path).expanduser()


def _configure_sqlite_engine(engine: Engine, *, enable_wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection: sqlite3.Connection, _: object) -> None:
        cursor: sqlite3.Cursor = dbapi_connection.cursor()
        try:
            if enable_wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()


def build_engine(url: str) -> AsyncEngine:
    if not _is_sqlite_url(url):
        return create_async_engine(url, echo=False)
    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_SECONDS},
    )
    _configure_sqlite_engine(engine.sync_engine, enable_wal=sqlite_db_path_from_url(url) is not None)
    return engine


def _ensure_sqlite_dir(url: str) -> None:
    path = sqlite_db_path_from_url(url)
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)


def _check_sqlite_integrity(path: Path) -> None:
    if not path.exists():
        return
    try:
        with sqlite3.connect(str(path)) as conn:
            rows = [row[0] for row in conn.execute("PRAGMA integrity_check;").fetchall()]
    except sqlite3.DatabaseError as exc:
        rows = [str(exc)]
    if rows == ["ok"]:
        return
    details = "; ".join(str(row) for row in rows) or "integrity_check returned no rows"
    logger.error("SQLite integrity check failed path=%s details=%s", path, details)
    if "locked" in details.lower():
        raise RuntimeError(f"SQLite integrity check failed for {path} ({details}). Another instance may be running.")
    raise RuntimeError(
        f"SQLite integrity check failed for {path} ({details}). "
        "Move the file aside to start with a fresh balancer state, or restore a backup."
    )


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is not None:
        return _session_factory

    url = get_settings().database_url
    _ensure_sqlite_dir(url)
    sqlite_path = sqlite_db_path_from_url(url)
    if sqlite_path is not None:
        _check_sqlite_integrity(sqlite_path)

    engine = build_engine(url)
    try:
        await create_schema(engine)
    except BaseException:
        await engine.dispose()
        raise
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def close_db() -> None:
    global _engine, _session_factory
    engine = _engine
    _engine = None
    _session_factory = None
    if engine is not None:
        await engine.dispose()


async def _shielded(awaitable: Awaitable[_T]) -> _T:
    with anyio.CancelScope(shield=True):
        return await awaitable


async def _safe_rollback(session: AsyncSession) -> None:
    if not session.in_transaction():
        return
    try:
        await _shielded(session.rollback())
    except BaseException:
        return


async def _safe_close(session: AsyncSession) -> None:
    try:
        await _shielded(session.close())
    except BaseException:
        return
