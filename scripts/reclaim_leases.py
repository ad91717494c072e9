from __future__ import annotations

import asyncio
import logging

from delayguard.core.logging import configure_logging
from delayguard.persistence.db import SessionLocal
from delayguard.services.notifications.queue import reclaim_expired_leases


logger = logging.getLogger(__name__)


async def _main() -> None:
    # One-shot lease reclamation for cron hosts that do not run the arq worker.
    configure_logging()
    async with SessionLocal() as session:
        reclaimed = await reclaim_expired_leases(session=session)
    logger.info("reclaimed %s expired notification leases", reclaimed)


if __name__ == "__main__":
    asyncio.run(_main())
