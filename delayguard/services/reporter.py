from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.core.config import get_settings
from delayguard.core.errors import StorageUnavailableError
from delayguard.persistence.guards import storage_errors
from delayguard.services.notifications.queue import (
    count_expired_leases,
    queue_depth_by_channel,
    queue_state_counts,
)
from delayguard.services.telemetry import (
    counters_snapshot,
    external_call_summary,
    gauges_snapshot,
    histogram_summary,
    set_gauge,
)


logger = logging.getLogger(__name__)

_COUNTER_NAMES = (
    "jobs_enqueued",
    "jobs_succeeded",
    "jobs_retried",
    "jobs_dead",
    "jobs_duplicate",
    "ledger_write_failures",
    "leases_reclaimed",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def publish_queue_depth(*, session: AsyncSession) -> dict[str, int]:
    # Refresh per-channel depth gauges from storage; storage is the source of truth.
    depth = await queue_depth_by_channel(session=session)
    for channel, value in depth.items():
        set_gauge("queue_depth_by_channel", value, channel=channel)
    return depth


async def collect_notification_metrics(*, session: AsyncSession, window_s: int = 900) -> dict[str, Any]:
    """Snapshot queue state from storage merged with in-process counters.

    Counters cover only this process; state counts and depth come from the
    shared database and are identical across processes.
    """
    depth = await publish_queue_depth(session=session)
    state_counts = await queue_state_counts(session=session)
    counters = counters_snapshot()
    return {
        "queue_depth_by_channel": depth,
        "jobs_by_state": state_counts,
        "expired_leases": await count_expired_leases(session=session),
        "counters": {name: counters.get(name, 0) for name in _COUNTER_NAMES},
        "counters_by_channel": {
            key: value for key, value in counters.items() if "." in key and key.split(".", 1)[0] in _COUNTER_NAMES
        },
        "gauges": gauges_snapshot(),
        "send_latency_ms": histogram_summary("send_latency_ms", window_s=window_s),
        "providers": external_call_summary(window_s),
    }


async def health_status(*, session: AsyncSession, heartbeat: datetime | None) -> dict[str, Any]:
    # Report degraded rather than failing so ops probes always get a body.
    settings = get_settings()
    reasons: list[str] = []
    storage_ok = True
    expired_leases = 0
    try:
        async with storage_errors("health_status"):
            await session.execute(text("SELECT 1"))
        expired_leases = await count_expired_leases(session=session)
    except (StorageUnavailableError, SQLAlchemyError):
        logger.exception("health_storage_check_failed")
        storage_ok = False
        reasons.append("storage_unavailable")

    heartbeat_age_s: float | None = None
    if heartbeat is None:
        reasons.append("worker_heartbeat_missing")
    else:
        if heartbeat.tzinfo is None:
            heartbeat = heartbeat.replace(tzinfo=timezone.utc)
        heartbeat_age_s = max(0.0, (_utc_now() - heartbeat).total_seconds())
        if heartbeat_age_s > settings.worker_heartbeat_stale_after_s:
            reasons.append("worker_heartbeat_stale")
    if expired_leases:
        reasons.append("expired_leases_pending")

    return {
        "status": "ok" if not reasons else "degraded",
        "reasons": reasons,
        "storage_ok": storage_ok,
        "worker_heartbeat_age_s": heartbeat_age_s,
        "expired_leases": expired_leases,
    }
