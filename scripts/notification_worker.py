from __future__ import annotations

import asyncio
import signal

from delayguard.core.logging import configure_logging
from delayguard.workers.notification_worker import build_dispatchers


async def _main() -> None:
    # Run dispatcher loops without arq so a host can scale senders independently of tracking intake.
    configure_logging()
    dispatchers = build_dispatchers()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: [dispatcher.stop() for dispatcher in dispatchers])
    await asyncio.gather(*(dispatcher.run() for dispatcher in dispatchers))


if __name__ == "__main__":
    asyncio.run(_main())
