from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Callable

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.core.config import get_settings
from delayguard.core.errors import JobStateError, TemplateRenderError
from delayguard.domain.notifications import Channel, ClaimedJob, JobState, SendFailure, SendSuccess, parse_notification_payload
from delayguard.providers.channels.base import ChannelSender
from delayguard.services.notifications.ledger import has_notified, record_notified
from delayguard.services.notifications.queue import (
    QueuePolicy,
    ack_notification_job,
    claim_notification_job,
    default_queue_policy,
    nack_notification_job,
)
from delayguard.services.notifications.templates import render_message
from delayguard.services.telemetry import increment_counter, observe_histogram


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class ChannelDispatcher:
    """Poll the queue for one channel and deliver jobs through a sender.

    Any number of dispatchers may run for the same channel in one or many
    processes; they coordinate only through queue claims and the ledger.
    """

    def __init__(
        self,
        *,
        sender: ChannelSender,
        session_factory: SessionFactory | None = None,
        lease_ms: int | None = None,
        poll_interval_ms: int | None = None,
        policy: QueuePolicy | None = None,
    ) -> None:
        settings = get_settings()
        self.channel = Channel(sender.channel)
        self._sender = sender
        if session_factory is None:
            from delayguard.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._policy = policy or default_queue_policy()
        self._lease_ms = int(lease_ms or self._policy.lease_ms)
        self._poll_interval_s = max(0.01, int(poll_interval_ms or settings.notify_poll_interval_ms) / 1000.0)
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        # Stop claiming new jobs; an in-flight send finishes and is acked or nacked normally.
        self._stopping.set()

    async def dispatch_once(self) -> str | None:
        # Claim and process at most one job; None means nothing was due.
        async with self._session_factory() as session:
            job = await claim_notification_job(session=session, channel=self.channel, lease_ms=self._lease_ms)
            if job is None:
                return None
            return await self._process(session=session, job=job)

    async def _process(self, *, session: AsyncSession, job: ClaimedJob) -> str:
        channel = self.channel.value
        if await has_notified(session=session, signature=job.delay_signature, channel=self.channel):
            # A previous attempt delivered but died before acking; never send twice.
            await ack_notification_job(session=session, job_id=job.id, lease_token=job.lease_token, latency_ms=0)
            increment_counter("jobs_duplicate", channel=channel)
            logger.info("notification_already_delivered job_id=%s channel=%s", job.id, channel)
            return JobState.SUCCEEDED.value

        try:
            message = render_message(parse_notification_payload(job.payload_json))
        except (ValidationError, TemplateRenderError) as exc:
            return await self._fail(session=session, job=job, error=f"render_failed: {exc}", retryable=False)

        start = time.monotonic()
        try:
            result = await self._sender.send(message)
        except Exception as exc:  # noqa: BLE001 - senders should return results; escaped errors are retried
            logger.exception("notification_sender_raised job_id=%s channel=%s", job.id, channel)
            result = SendFailure(error=f"sender_exception: {type(exc).__name__}: {exc}", retryable=True)
        latency_ms = int((time.monotonic() - start) * 1000)
        observe_histogram("send_latency_ms", latency_ms, channel=channel)

        if isinstance(result, SendSuccess):
            try:
                await record_notified(
                    session=session,
                    signature=job.delay_signature,
                    channel=self.channel,
                    job_id=job.id,
                )
            except Exception:  # noqa: BLE001 - the send already happened; ack regardless
                await session.rollback()
                increment_counter("ledger_write_failures", channel=channel)
                logger.exception(
                    "notification_ledger_write_failed job_id=%s signature=%s channel=%s",
                    job.id,
                    job.delay_signature,
                    channel,
                )
            try:
                await ack_notification_job(
                    session=session,
                    job_id=job.id,
                    lease_token=job.lease_token,
                    latency_ms=latency_ms,
                )
            except JobStateError:
                logger.warning("notification_lease_lost_before_ack job_id=%s channel=%s", job.id, channel)
                return "lease_lost"
            return JobState.SUCCEEDED.value
        return await self._fail(
            session=session,
            job=job,
            error=result.error,
            retryable=result.retryable,
            latency_ms=latency_ms,
        )

    async def _fail(
        self,
        *,
        session: AsyncSession,
        job: ClaimedJob,
        error: str,
        retryable: bool,
        latency_ms: int | None = None,
    ) -> str:
        try:
            state = await nack_notification_job(
                session=session,
                job_id=job.id,
                error=error,
                retryable=retryable,
                lease_token=job.lease_token,
                latency_ms=latency_ms,
                policy=self._policy,
            )
        except JobStateError:
            logger.warning("notification_lease_lost_before_nack job_id=%s channel=%s", job.id, self.channel.value)
            return "lease_lost"
        return state.value

    async def run(self) -> None:
        # Poll until stopped; cycle failures are logged and the loop keeps going.
        logger.info("notification_dispatcher_started channel=%s", self.channel.value)
        while not self._stopping.is_set():
            try:
                outcome = await self.dispatch_once()
            except Exception:  # noqa: BLE001 - storage outages must not kill the dispatcher
                logger.exception("notification_dispatch_cycle_failed channel=%s", self.channel.value)
                outcome = None
            if outcome is None:
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval_s)
        logger.info("notification_dispatcher_stopped channel=%s", self.channel.value)
