from __future__ import annotations

from datetime import datetime
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.persistence.db import get_session
from delayguard.services.intake import get_tracking_queue_depth, get_worker_heartbeat


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_heartbeat() -> datetime | None:
    # Separate dependency so tests can pin the worker heartbeat without Redis.
    return await get_worker_heartbeat()


async def get_tracking_backlog() -> int | None:
    # None when Redis is unreachable; the summary still answers from storage.
    return await get_tracking_queue_depth()
