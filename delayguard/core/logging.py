from __future__ import annotations

import logging
import sys

from delayguard.core.config import get_settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install one stdout handler on the root logger so API, worker, and scripts log identically.
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(handler, "_delayguard", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._delayguard = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # SQL echo is noisy at INFO; keep engine logs for explicit debugging only.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
