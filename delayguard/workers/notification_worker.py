from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any

from arq import Retry, cron
from arq.connections import RedisSettings

from delayguard.core.config import get_settings
from delayguard.core.errors import ChannelConfigError, StorageUnavailableError, TrackingPayloadError
from delayguard.core.logging import configure_logging
from delayguard.domain.notifications import Channel
from delayguard.persistence.db import SessionLocal
from delayguard.providers.channels.factory import get_channel_sender
from delayguard.services.intake import TrackingUpdateJob, handle_tracking_update, set_worker_heartbeat
from delayguard.services.notifications.dispatcher import ChannelDispatcher
from delayguard.services.notifications.queue import reclaim_expired_leases
from delayguard.services.reporter import publish_queue_depth

logger = logging.getLogger(__name__)


async def check_tracking_update(ctx, payload: dict[str, Any]) -> str:
    # Run the delay pipeline for one webhook-delivered tracking update.
    job = TrackingUpdateJob.model_validate(payload)
    try:
        async with SessionLocal() as session:
            outcome = await handle_tracking_update(session=session, job=job)
    except TrackingPayloadError as exc:
        # Malformed carrier payloads will not improve on retry.
        logger.warning("tracking_update_rejected order_id=%s error=%s", job.order_id, exc)
        return "rejected"
    except StorageUnavailableError as exc:
        tries = int(ctx.get("job_try", 1))
        raise Retry(defer=min(60, 2**tries)) from exc
    if outcome.verdict.error is not None:
        return "input_error"
    return f"enqueued:{len(outcome.enqueued)}"


async def reclaim_leases(ctx) -> int:
    # Sole crash-recovery path: return expired IN_FLIGHT jobs to the queue.
    async with SessionLocal() as session:
        reclaimed = await reclaim_expired_leases(session=session)
        await publish_queue_depth(session=session)
    return reclaimed


async def _heartbeat_loop() -> None:
    interval_s = max(1, int(get_settings().worker_heartbeat_interval_s))
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - keep heartbeats alive while surfacing Redis failures in worker logs.
            logger.exception("worker heartbeat update failed")
        await asyncio.sleep(interval_s)


def _enabled_channels() -> list[Channel]:
    settings = get_settings()
    channels = []
    if settings.notify_sms_enabled:
        channels.append(Channel.SMS)
    if settings.notify_email_enabled:
        channels.append(Channel.EMAIL)
    return channels


def build_dispatchers() -> list[ChannelDispatcher]:
    # One dispatcher per enabled channel; channels whose provider is "none" are skipped.
    dispatchers = []
    for channel in _enabled_channels():
        try:
            sender = get_channel_sender(channel)
        except ChannelConfigError as exc:
            logger.warning("notification_channel_disabled channel=%s reason=%s", channel.value, exc)
            continue
        dispatchers.append(ChannelDispatcher(sender=sender, session_factory=SessionLocal))
    return dispatchers


async def _startup(ctx) -> None:
    # Start dispatchers and heartbeat with the worker so notifications flow even when no tracking jobs arrive.
    configure_logging()
    dispatchers = build_dispatchers()
    ctx["dispatchers"] = dispatchers
    ctx["dispatcher_tasks"] = [asyncio.create_task(dispatcher.run()) for dispatcher in dispatchers]
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Stop claiming and let in-flight sends finish; provider call timeouts bound the wait, sends are never cancelled.
    for dispatcher in ctx.get("dispatchers", []):
        dispatcher.stop()
    tasks = ctx.get("dispatcher_tasks", [])
    if tasks:
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("notification_dispatcher_exited_with_error error=%r", result)
    heartbeat = ctx.get("heartbeat_task")
    if heartbeat:
        heartbeat.cancel()
        with suppress(asyncio.CancelledError):
            await heartbeat


def _reclaim_seconds() -> set[int]:
    step = max(1, min(60, int(get_settings().notify_reclaim_interval_s)))
    return set(range(0, 60, step))


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.tracking_queue_name
    max_tries = 5
    functions = [check_tracking_update]
    cron_jobs = [cron(reclaim_leases, second=_reclaim_seconds(), run_at_startup=True)]
    on_startup = _startup
    on_shutdown = _shutdown
