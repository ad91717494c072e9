from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from delayguard.core.config import get_settings

# Seconds a SQLite writer waits on a locked database before raising.
SQLITE_BUSY_TIMEOUT_S = 30


def engine_options(database_url: str) -> dict[str, Any]:
    """Engine keyword arguments for the configured backend.

    PostgreSQL gets a bounded asyncpg pool sized so every dispatcher, the
    reclaim cron and the ops API share one predictable connection budget.
    SQLite (local runs and tests) has no pool to size, but several
    dispatchers still write to the same file, so writers wait on the lock
    instead of failing a claim outright.
    """
    settings = get_settings()
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT_S}
        return options
    options["pool_size"] = max(1, int(settings.db_pool_size))
    options["max_overflow"] = max(0, int(settings.db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        # A stuck claim query must not hold row locks past a lease.
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return options


def build_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or get_settings().database_url
    return create_async_engine(url, **engine_options(url))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Claimed jobs are read after commit, so instances must not expire on commit.
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
