"""
Async engine and sessions for SqlStore and scripts/migrate_db.py.

database.url is written with the plain scheme and mapped to an async
driver here: postgresql → asyncpg, mysql → aiomysql, sqlite → aiosqlite.
One engine per process; close_db() drops it so the next get_engine(url)
can point somewhere else (tests, the migration script's --url).
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

ASYNC_SCHEMES = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql://", "mysql+aiomysql://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

# postgres / mysql
POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def _to_async_url(db_url: str) -> str:
    for plain, driver in ASYNC_SCHEMES:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _engine_kwargs(db_url: str) -> dict:
    """SQLite gets no pool tuning; an in-memory SQLite shares one connection."""
    base = {"echo": get_settings().debug}

    if "sqlite" in db_url:
        kwargs = {**base, "connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url:
            kwargs["poolclass"] = StaticPool
        return kwargs

    return {**base, **POOL_OPTIONS}


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    """Return the global engine, creating it from url or settings if needed."""
    global _engine
    if _engine is None:
        db_url = _to_async_url(url or get_settings().database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url))
        shown = str(_engine.url)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=shown.split("@")[-1] if "@" in shown else shown)
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction per store call: commit on exit, roll back on error."""
    factory = _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(url: Optional[str] = None) -> None:
    """Create any missing tables; existing ones are left untouched."""
    engine = get_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose the engine so the next get_engine() builds a fresh one."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
