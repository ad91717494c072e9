from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.core.config import get_settings
from delayguard.domain.notifications import Channel
from delayguard.services.notifications.pipeline import (
    CHANNEL_ORDER,
    CustomerContact,
    OrderContext,
    PipelineOutcome,
    process_tracking_update,
)
from delayguard.services.tracking import normalize_tracking_payload


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "delayguard:worker:heartbeat"
TRACKING_UPDATE_TASK = "check_tracking_update"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class TrackingUpdateJob(BaseModel):
    # Webhook-to-worker handoff: order context plus the raw carrier payload.
    order_id: str
    order_number: str
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    sms_enabled: bool = True
    email_enabled: bool = True
    delay_threshold_days: int | None = Field(default=None, ge=0)
    tracking_payload: dict[str, Any]

    def order_context(self) -> OrderContext:
        enabled = {Channel.SMS: self.sms_enabled, Channel.EMAIL: self.email_enabled}
        return OrderContext(
            order_id=self.order_id,
            order_number=self.order_number,
            customer=CustomerContact(
                name=self.customer_name,
                phone=self.customer_phone,
                email=self.customer_email,
            ),
            enabled_channels=tuple(channel for channel in CHANNEL_ORDER if enabled[channel]),
            delay_threshold_days=self.delay_threshold_days,
        )


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.tracking_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def enqueue_tracking_update(job: TrackingUpdateJob) -> str | None:
    # Hand tracking updates to the worker so webhook handlers return immediately.
    redis = await get_redis_pool()
    queued = await redis.enqueue_job(TRACKING_UPDATE_TASK, job.model_dump(mode="json"))
    if queued is None:
        return None
    logger.info("tracking_update_enqueued order_id=%s arq_job_id=%s", job.order_id, queued.job_id)
    return queued.job_id


async def get_tracking_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(get_settings().tracking_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the ops health endpoint.
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def handle_tracking_update(*, session: AsyncSession, job: TrackingUpdateJob) -> PipelineOutcome:
    # Normalize then run the pipeline; malformed payloads raise TrackingPayloadError for the caller.
    snapshot = normalize_tracking_payload(job.tracking_payload)
    outcome = await process_tracking_update(session=session, snapshot=snapshot, order=job.order_context())
    logger.info(
        "tracking_update_processed order_id=%s delayed=%s reason=%s enqueued=%s duplicates=%s",
        job.order_id,
        outcome.verdict.is_delayed,
        outcome.verdict.delay_reason.value,
        sorted(channel.value for channel in outcome.enqueued),
        sorted(channel.value for channel in outcome.duplicates),
    )
    return outcome
