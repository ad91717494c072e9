from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from delayguard.core.errors import StorageUnavailableError


@asynccontextmanager
async def storage_errors(operation: str) -> AsyncIterator[None]:
    # Surface connection-level failures as one domain error so callers never mistake them for empty results.
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise StorageUnavailableError(f"{operation}: storage unavailable") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StorageUnavailableError(f"{operation}: connection lost") from exc
        raise
