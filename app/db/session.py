from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable
from pathlib import Path
from typing import TypeVar

import anyio
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config.settings import get_settings

_settings = get_settings()

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 5_000
_SQLITE_BUSY_TIMEOUT_SECONDS = _SQLITE_BUSY_TIMEOUT_MS / 1000

_T = TypeVar("_T")


def _is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite:///") or url.startswith("sqlite:///")


def _sqlite_path(url: str) -> Path | None:
    if not _is_sqlite_url(url):
        return None
    path = url.split(":///", 1)[1].partition("?")[0]
    if not path or path == ":memory:":
        return None
    return Path(path).expanduser()


def _configure_sqlite_engine(engine: Engine, *, enable_wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection: sqlite3.Connection, _: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            if enable_wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()


def _build_engine(url: str) -> AsyncEngine:
    if not _is_sqlite_url(url):
        return create_async_engine(
            url,
            echo=False,
            pool_size=_settings.database_pool_size,
            max_overflow=_settings.database_max_overflow,
            pool_timeout=_settings.database_pool_timeout_seconds,
        )
    is_memory = _sqlite_path(url) is None
    if is_memory:
        engine = create_async_engine(url, echo=False, connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_SECONDS})
    else:
        engine = create_async_engine(
            url,
            echo=False,
            pool_size=_settings.database_pool_size,
            max_overflow=_settings.database_max_overflow,
            pool_timeout=_settings.database_pool_timeout_seconds,
            connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_SECONDS},
        )
    _configure_sqlite_engine(engine.sync_engine, enable_wal=not is_memory)
    return engine


DATABASE_URL = _settings.database_url

engine = _build_engine(DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def _shielded(awaitable: Awaitable[_T]) -> _T:
    with anyio.CancelScope(shield=True):
        return await awaitable


async def _safe_rollback(session: AsyncSession) -> None:
    if not session.in_transaction():
        return
    try:
        await _shielded(session.rollback())
    except Exception:
        logger.warning("Session rollback failed", exc_info=True)


async def _safe_close(session: AsyncSession) -> None:
    try:
        await _shielded(session.close())
    except Exception:
        logger.warning("Session close failed", exc_info=True)


async def get_session() -> AsyncIterator[AsyncSession]:
    session = SessionLocal()
    try:
        yield session
    except BaseException:
        await _safe_rollback(session)
        raise
    finally:
        if session.in_transaction():
            await _safe_rollback(session)
        await _safe_close(session)


async def init_db() -> None:
    from app.db.models import Base

    sqlite_path = _sqlite_path(DATABASE_URL)
    if sqlite_path is not None:
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready sqlite_path=%s", sqlite_path)


async def close_db() -> None:
    await engine.dispose()
