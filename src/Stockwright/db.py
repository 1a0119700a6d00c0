"""Async SQLAlchemy engine and the unit-of-work helper used by the store."""

from __future__ import annotations

import contextlib
import os
from collections.abc import AsyncIterator
from typing import Any

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Stockwright.config import load_settings

log = structlog.get_logger()

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
}


def async_url(raw: str) -> str:
    """Swap a bare ``sqlite://`` or ``postgresql://`` scheme for its async driver."""
    scheme, sep, rest = raw.partition("://")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


DATABASE_URL = async_url(load_settings().database_url)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict[str, Any]:
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        opts: dict[str, Any] = {"connect_args": {"timeout": 30}}
        # An in-memory database lives only as long as its one connection
        if ":memory:" in url or os.environ.get("STOCKWRIGHT_SQLITE_STATIC_POOL") == "1":
            opts["poolclass"] = StaticPool
        return opts
    if backend == "postgresql":
        return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}
    return {}


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is not None:
        return _engine
    _engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
    _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
    url = _engine.url
    log.info(
        "db.connection.config",
        backend=url.get_backend_name(),
        driver=url.drivername,
        host=url.host or "",
        database=url.database or "",
    )
    return _engine


async def create_schema() -> None:
    """Create any missing tables; existing ones are left alone."""
    from Stockwright import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    engine, _engine, _sessionmaker = _engine, None, None
    if engine is not None:
        await engine.dispose()


@contextlib.asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Yield a session whose work commits on exit or rolls back on any error."""
    get_engine()
    assert _sessionmaker is not None
    async with _sessionmaker() as session:
        try:
            yield session
        except BaseException:
            await session.rollback()
            raise
        await session.commit()
