from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.core.config import get_settings
from delayguard.core.errors import DuplicateJobError, JobNotFoundError, JobStateError
from delayguard.domain.models import NotificationAttempt, NotificationJob
from delayguard.domain.notifications import (
    CLAIMABLE_STATES,
    Channel,
    ClaimedJob,
    EmailPayload,
    JobState,
    SmsPayload,
    payload_channel,
)
from delayguard.persistence.dialects import as_utc
from delayguard.persistence.guards import storage_errors
from delayguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_CLAIMABLE_VALUES = tuple(state.value for state in CLAIMABLE_STATES)
# Losing a compare-and-set to another dispatcher is normal; try the next candidate a few times.
_CLAIM_CAS_ATTEMPTS = 3
_MAX_ERROR_CHARS = 2000


@dataclass(frozen=True)
class QueuePolicy:
    max_attempts: int
    backoff_base_ms: int
    backoff_cap_ms: int
    jitter_ms: int
    lease_ms: int


def default_queue_policy() -> QueuePolicy:
    # Build the retry and lease policy from settings with sane lower bounds.
    settings = get_settings()
    base = max(1, int(settings.notify_backoff_base_ms))
    return QueuePolicy(
        max_attempts=max(1, int(settings.notify_max_attempts)),
        backoff_base_ms=base,
        backoff_cap_ms=max(base, int(settings.notify_backoff_cap_ms)),
        jitter_ms=max(0, int(settings.notify_backoff_jitter_ms)),
        lease_ms=max(1, int(settings.notify_lease_duration_ms)),
    )


def _utc_now() -> datetime:
    # Keep scheduling and lease bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)


def retry_backoff_ms(attempt: int, *, policy: QueuePolicy | None = None, rng: random.Random | None = None) -> int:
    """Delay before retry number ``attempt`` (1-based) becomes claimable.

    Exponential in the attempt count, capped at ``backoff_cap_ms``, with
    uniform jitter in ``[0, jitter_ms]`` added so simultaneous failures do not
    retry in lockstep. Never returns less than one millisecond.
    """
    policy = policy or default_queue_policy()
    exponent = max(0, int(attempt) - 1)
    backoff = min(policy.backoff_cap_ms, policy.backoff_base_ms * (2**exponent))
    jitter = (rng or random).randint(0, policy.jitter_ms) if policy.jitter_ms > 0 else 0
    return max(1, backoff + jitter)


async def enqueue_notification_job(
    *,
    session: AsyncSession,
    delay_signature: str,
    payload: SmsPayload | EmailPayload,
) -> str:
    # Rely on the (delay_signature, channel) constraint so concurrent enqueues cannot both win.
    channel = payload_channel(payload)
    now = _utc_now()
    job = NotificationJob(
        id=uuid4().hex,
        channel=channel.value,
        delay_signature=delay_signature,
        order_id=payload.order_id,
        payload_json=payload.model_dump(mode="json"),
        state=JobState.PENDING.value,
        attempt=0,
        next_attempt_at=now,
        created_at=now,
        updated_at=now,
    )
    async with storage_errors("enqueue_notification_job"):
        session.add(job)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise DuplicateJobError(delay_signature, channel.value) from exc
    increment_counter("jobs_enqueued", channel=channel.value)
    logger.info(
        "notification_job_enqueued job_id=%s channel=%s signature=%s",
        job.id,
        channel.value,
        delay_signature,
    )
    return job.id


async def claim_notification_job(
    *,
    session: AsyncSession,
    channel: Channel,
    lease_ms: int | None = None,
) -> ClaimedJob | None:
    """Lease the next due job for ``channel`` or return ``None`` without blocking.

    Candidates are ordered by ``next_attempt_at`` then ``created_at``. Row
    locks use SKIP LOCKED where the database supports them, and the state
    transition is a compare-and-set so two claimers can never both succeed.
    """
    lease = timedelta(milliseconds=max(1, int(lease_ms or default_queue_policy().lease_ms)))
    channel_value = Channel(channel).value
    async with storage_errors("claim_notification_job"):
        for _ in range(_CLAIM_CAS_ATTEMPTS):
            now = _utc_now()
            candidate = (
                await session.execute(
                    select(
                        NotificationJob.id,
                        NotificationJob.delay_signature,
                        NotificationJob.order_id,
                        NotificationJob.payload_json,
                        NotificationJob.attempt,
                    )
                    .where(
                        NotificationJob.channel == channel_value,
                        NotificationJob.state.in_(_CLAIMABLE_VALUES),
                        NotificationJob.next_attempt_at <= now,
                    )
                    .order_by(NotificationJob.next_attempt_at.asc(), NotificationJob.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
            ).first()
            if candidate is None:
                await session.rollback()
                return None
            lease_token = uuid4().hex
            lease_expires_at = now + lease
            result = await session.execute(
                update(NotificationJob)
                .where(
                    NotificationJob.id == candidate.id,
                    NotificationJob.state.in_(_CLAIMABLE_VALUES),
                )
                .values(
                    state=JobState.IN_FLIGHT.value,
                    lease_token=lease_token,
                    lease_expires_at=lease_expires_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                continue
            await session.commit()
            return ClaimedJob(
                id=candidate.id,
                channel=Channel(channel_value),
                delay_signature=candidate.delay_signature,
                order_id=candidate.order_id,
                payload_json=dict(candidate.payload_json or {}),
                attempt=int(candidate.attempt),
                lease_token=lease_token,
                lease_expires_at=lease_expires_at,
            )
    return None


async def _load_in_flight_job(
    *,
    session: AsyncSession,
    job_id: str,
    lease_token: str | None,
) -> NotificationJob:
    # Validate the transition source before any write; stale leases must not complete a reclaimed job.
    job = (
        await session.execute(
            select(NotificationJob)
            .where(NotificationJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if job is None:
        await session.rollback()
        raise JobNotFoundError(f"notification job {job_id} not found")
    if job.state != JobState.IN_FLIGHT.value:
        await session.rollback()
        raise JobStateError(f"notification job {job_id} is {job.state}, expected in_flight")
    if lease_token is not None and job.lease_token != lease_token:
        await session.rollback()
        raise JobStateError(f"notification job {job_id} lease is no longer held")
    return job


async def _apply_transition(
    *,
    session: AsyncSession,
    job: NotificationJob,
    values: dict[str, Any],
) -> None:
    # Compare-and-set on the current lease so a concurrent reclaim wins cleanly.
    result = await session.execute(
        update(NotificationJob)
        .where(
            NotificationJob.id == job.id,
            NotificationJob.state == JobState.IN_FLIGHT.value,
            NotificationJob.lease_token == job.lease_token,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise JobStateError(f"notification job {job.id} changed state during transition")


async def ack_notification_job(
    *,
    session: AsyncSession,
    job_id: str,
    lease_token: str | None = None,
    latency_ms: int | None = None,
) -> None:
    # Mark a leased job delivered and append its attempt record in one transaction.
    now = _utc_now()
    async with storage_errors("ack_notification_job"):
        job = await _load_in_flight_job(session=session, job_id=job_id, lease_token=lease_token)
        attempt_no = int(job.attempt) + 1
        channel = job.channel
        await _apply_transition(
            session=session,
            job=job,
            values={
                "state": JobState.SUCCEEDED.value,
                "attempt": attempt_no,
                "lease_token": None,
                "lease_expires_at": None,
                "last_error": None,
                "updated_at": now,
                "completed_at": now,
            },
        )
        session.add(
            NotificationAttempt(
                id=uuid4().hex,
                job_id=job_id,
                attempt_no=attempt_no,
                outcome="succeeded",
                error=None,
                latency_ms=latency_ms,
                finished_at=now,
            )
        )
        await session.commit()
    increment_counter("jobs_succeeded", channel=channel)
    logger.info("notification_job_succeeded job_id=%s channel=%s attempt=%s", job_id, channel, attempt_no)


async def nack_notification_job(
    *,
    session: AsyncSession,
    job_id: str,
    error: str,
    retryable: bool = True,
    lease_token: str | None = None,
    latency_ms: int | None = None,
    policy: QueuePolicy | None = None,
) -> JobState:
    """Record a failed attempt and schedule a retry or dead-letter the job.

    Returns the resulting state: FAILED_RETRYABLE while attempts remain for a
    transient failure, otherwise DEAD. DEAD jobs keep their payload and last
    error for inspection and are never claimed again.
    """
    policy = policy or default_queue_policy()
    now = _utc_now()
    async with storage_errors("nack_notification_job"):
        job = await _load_in_flight_job(session=session, job_id=job_id, lease_token=lease_token)
        attempt_no = int(job.attempt) + 1
        channel = job.channel
        last_error = (error or "unknown_error")[:_MAX_ERROR_CHARS]
        values: dict[str, Any] = {
            "attempt": attempt_no,
            "lease_token": None,
            "lease_expires_at": None,
            "last_error": last_error,
            "updated_at": now,
        }
        if retryable and attempt_no < policy.max_attempts:
            new_state = JobState.FAILED_RETRYABLE
            values["next_attempt_at"] = now + timedelta(
                milliseconds=retry_backoff_ms(attempt_no, policy=policy)
            )
        else:
            new_state = JobState.DEAD
            values["completed_at"] = now
        values["state"] = new_state.value
        await _apply_transition(session=session, job=job, values=values)
        session.add(
            NotificationAttempt(
                id=uuid4().hex,
                job_id=job_id,
                attempt_no=attempt_no,
                outcome="retryable_failure" if retryable else "permanent_failure",
                error=last_error,
                latency_ms=latency_ms,
                finished_at=now,
            )
        )
        await session.commit()
    if new_state == JobState.DEAD:
        increment_counter("jobs_dead", channel=channel)
        logger.warning(
            "notification_job_dead job_id=%s channel=%s attempt=%s retryable=%s error=%s",
            job_id,
            channel,
            attempt_no,
            retryable,
            last_error,
        )
    else:
        increment_counter("jobs_retried", channel=channel)
        logger.info(
            "notification_job_retry_scheduled job_id=%s channel=%s attempt=%s next_attempt_at=%s",
            job_id,
            channel,
            attempt_no,
            values["next_attempt_at"].isoformat(),
        )
    return new_state


async def reclaim_expired_leases(*, session: AsyncSession) -> int:
    # Return crashed or stalled IN_FLIGHT jobs to PENDING; reclaim does not consume an attempt.
    now = _utc_now()
    async with storage_errors("reclaim_expired_leases"):
        result = await session.execute(
            update(NotificationJob)
            .where(
                NotificationJob.state == JobState.IN_FLIGHT.value,
                NotificationJob.lease_expires_at <= now,
            )
            .values(
                state=JobState.PENDING.value,
                lease_token=None,
                lease_expires_at=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    reclaimed = int(result.rowcount or 0)
    if reclaimed:
        increment_counter("leases_reclaimed", reclaimed)
        logger.warning("notification_leases_reclaimed count=%s", reclaimed)
    return reclaimed


async def get_notification_job(*, session: AsyncSession, job_id: str) -> NotificationJob | None:
    async with storage_errors("get_notification_job"):
        return await session.get(NotificationJob, job_id)


async def list_notification_jobs(
    *,
    session: AsyncSession,
    state: JobState | None = None,
    channel: Channel | None = None,
    limit: int = 100,
) -> list[NotificationJob]:
    query = select(NotificationJob)
    if state is not None:
        query = query.where(NotificationJob.state == JobState(state).value)
    if channel is not None:
        query = query.where(NotificationJob.channel == Channel(channel).value)
    async with storage_errors("list_notification_jobs"):
        rows = (
            await session.execute(
                query.order_by(NotificationJob.created_at.desc()).limit(max(1, min(limit, 500)))
            )
        ).scalars().all()
    return list(rows)


async def list_dead_jobs(
    *,
    session: AsyncSession,
    channel: Channel | None = None,
    limit: int = 100,
) -> list[NotificationJob]:
    # DEAD jobs are retained indefinitely for operator inspection.
    return await list_notification_jobs(session=session, state=JobState.DEAD, channel=channel, limit=limit)


async def list_job_attempts(*, session: AsyncSession, job_id: str) -> list[NotificationAttempt]:
    async with storage_errors("list_job_attempts"):
        rows = (
            await session.execute(
                select(NotificationAttempt)
                .where(NotificationAttempt.job_id == job_id)
                .order_by(NotificationAttempt.attempt_no.asc())
            )
        ).scalars().all()
    return list(rows)


async def queue_state_counts(*, session: AsyncSession) -> dict[str, dict[str, int]]:
    # Count jobs by channel and state with every combination present, zero-filled.
    async with storage_errors("queue_state_counts"):
        rows = (
            await session.execute(
                select(NotificationJob.channel, NotificationJob.state, func.count()).group_by(
                    NotificationJob.channel, NotificationJob.state
                )
            )
        ).all()
    counts = {channel.value: {state.value: 0 for state in JobState} for channel in Channel}
    for channel, state, count in rows:
        counts.setdefault(channel, {s.value: 0 for s in JobState})[state] = int(count)
    return counts


async def queue_depth_by_channel(*, session: AsyncSession) -> dict[str, int]:
    # Depth counts work still owed to customers: PENDING plus FAILED_RETRYABLE.
    counts = await queue_state_counts(session=session)
    return {
        channel: sum(states.get(state, 0) for state in _CLAIMABLE_VALUES)
        for channel, states in counts.items()
    }


async def count_expired_leases(*, session: AsyncSession) -> int:
    now = _utc_now()
    async with storage_errors("count_expired_leases"):
        value = await session.scalar(
            select(func.count())
            .select_from(NotificationJob)
            .where(
                NotificationJob.state == JobState.IN_FLIGHT.value,
                NotificationJob.lease_expires_at <= now,
            )
        )
    return int(value or 0)


def serialize_job(job: NotificationJob) -> dict[str, Any]:
    # Ops view of a job; payload contact details stay out of listings.
    return {
        "id": job.id,
        "channel": job.channel,
        "delay_signature": job.delay_signature,
        "order_id": job.order_id,
        "state": job.state,
        "attempt": int(job.attempt),
        "next_attempt_at": as_utc(job.next_attempt_at),
        "lease_expires_at": as_utc(job.lease_expires_at),
        "last_error": job.last_error,
        "created_at": as_utc(job.created_at),
        "updated_at": as_utc(job.updated_at),
        "completed_at": as_utc(job.completed_at),
    }
