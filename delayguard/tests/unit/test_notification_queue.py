from __future__ import annotations

import random

import pytest

from delayguard.core.errors import DuplicateJobError, JobNotFoundError, JobStateError
from delayguard.domain.models import NotificationJob
from delayguard.domain.notifications import Channel, JobState
from delayguard.persistence.dialects import as_utc
from delayguard.services.notifications.queue import (
    QueuePolicy,
    ack_notification_job,
    claim_notification_job,
    enqueue_notification_job,
    list_dead_jobs,
    list_job_attempts,
    nack_notification_job,
    queue_depth_by_channel,
    queue_state_counts,
    reclaim_expired_leases,
    retry_backoff_ms,
)
from delayguard.services.telemetry import counters_snapshot
from delayguard.tests.utils.factories import email_payload, sms_payload

POLICY = QueuePolicy(max_attempts=3, backoff_base_ms=2000, backoff_cap_ms=60000, jitter_ms=0, lease_ms=30000)


async def _job(session_factory, job_id: str) -> NotificationJob:
    # Read through a fresh session so assertions see committed state only.
    async with session_factory() as session:
        return await session.get(NotificationJob, job_id)


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job(session, session_factory, clock) -> None:
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    row = await _job(session_factory, job_id)
    assert row.state == JobState.PENDING.value
    assert row.attempt == 0
    assert row.channel == "sms"
    assert as_utc(row.next_attempt_at) == clock.now
    assert row.payload_json["channel"] == "sms"
    assert counters_snapshot()["jobs_enqueued.sms"] == 1


@pytest.mark.asyncio
async def test_duplicate_enqueue_is_rejected_per_channel(session, clock) -> None:
    await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    with pytest.raises(DuplicateJobError) as excinfo:
        await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    assert excinfo.value.channel == "sms"
    # Same delay on another channel is a distinct job.
    await enqueue_notification_job(session=session, delay_signature="delay:a", payload=email_payload())


@pytest.mark.asyncio
async def test_duplicate_enqueue_rejected_after_success(session, clock) -> None:
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    claimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms)
    assert claimed is not None and claimed.id == job_id
    await ack_notification_job(session=session, job_id=job_id, lease_token=claimed.lease_token)
    with pytest.raises(DuplicateJobError):
        await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())


@pytest.mark.asyncio
async def test_claim_follows_next_attempt_order_per_channel(session, session_factory, clock) -> None:
    first = await enqueue_notification_job(session=session, delay_signature="delay:1", payload=sms_payload())
    clock.advance(seconds=1)
    second = await enqueue_notification_job(session=session, delay_signature="delay:2", payload=sms_payload())
    await enqueue_notification_job(session=session, delay_signature="delay:3", payload=email_payload())

    claimed_first = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms)
    claimed_second = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms)
    assert [claimed_first.id, claimed_second.id] == [first, second]
    assert await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms) is None

    row = await _job(session_factory, first)
    assert row.state == JobState.IN_FLIGHT.value
    assert row.lease_token == claimed_first.lease_token
    assert as_utc(row.lease_expires_at) == claimed_first.lease_expires_at


@pytest.mark.asyncio
async def test_claim_is_exclusive_across_sessions(session_factory, clock) -> None:
    async with session_factory() as session:
        await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    async with session_factory() as first, session_factory() as second:
        winner = await claim_notification_job(session=first, channel=Channel.SMS, lease_ms=1000)
        loser = await claim_notification_job(session=second, channel=Channel.SMS, lease_ms=1000)
    assert winner is not None
    assert loser is None


@pytest.mark.asyncio
async def test_ack_marks_success_and_records_attempt(session, session_factory, clock) -> None:
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    claimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms)
    await ack_notification_job(session=session, job_id=job_id, lease_token=claimed.lease_token, latency_ms=12)

    row = await _job(session_factory, job_id)
    assert row.state == JobState.SUCCEEDED.value
    assert row.attempt == 1
    assert row.lease_token is None
    assert as_utc(row.completed_at) == clock.now
    attempts = await list_job_attempts(session=session, job_id=job_id)
    assert [(a.attempt_no, a.outcome, a.latency_ms) for a in attempts] == [(1, "succeeded", 12)]

    with pytest.raises(JobStateError):
        await ack_notification_job(session=session, job_id=job_id)
    assert await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms) is None


@pytest.mark.asyncio
async def test_ack_rejects_unknown_job_and_stale_lease(session, clock) -> None:
    with pytest.raises(JobNotFoundError):
        await ack_notification_job(session=session, job_id="missing")
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    with pytest.raises(JobStateError):
        await ack_notification_job(session=session, job_id=job_id)
    await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms)
    with pytest.raises(JobStateError):
        await nack_notification_job(session=session, job_id=job_id, error="x", lease_token="not-the-lease")


@pytest.mark.asyncio
async def test_retryable_failures_back_off_then_dead_letter(session, session_factory, clock) -> None:
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    assert (await _job(session_factory, job_id)).state == JobState.PENDING.value

    schedule = []
    for expected_state, wait_s in (
        (JobState.FAILED_RETRYABLE, 2),
        (JobState.FAILED_RETRYABLE, 4),
        (JobState.DEAD, None),
    ):
        claimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=POLICY.lease_ms)
        assert claimed is not None
        assert (await _job(session_factory, job_id)).state == JobState.IN_FLIGHT.value
        state = await nack_notification_job(
            session=session,
            job_id=job_id,
            error="carrier timeout",
            lease_token=claimed.lease_token,
            policy=POLICY,
        )
        assert state == expected_state
        row = await _job(session_factory, job_id)
        assert row.state == expected_state.value
        schedule.append(as_utc(row.next_attempt_at))
        if wait_s is not None:
            # Not claimable until the backoff elapses.
            assert await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=1000) is None
            clock.advance(seconds=wait_s)

    assert schedule[0] < schedule[1]
    row = await _job(session_factory, job_id)
    assert row.attempt == 3
    assert row.last_error == "carrier timeout"
    clock.advance(hours=1)
    assert await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=1000) is None
    assert [job.id for job in await list_dead_jobs(session=session)] == [job_id]
    assert len(await list_job_attempts(session=session, job_id=job_id)) == 3


@pytest.mark.asyncio
async def test_permanent_failure_dead_letters_immediately(session, session_factory, clock) -> None:
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=email_payload())
    claimed = await claim_notification_job(session=session, channel=Channel.EMAIL, lease_ms=POLICY.lease_ms)
    state = await nack_notification_job(
        session=session,
        job_id=job_id,
        error="http_400",
        retryable=False,
        lease_token=claimed.lease_token,
        policy=POLICY,
    )
    assert state == JobState.DEAD
    row = await _job(session_factory, job_id)
    assert row.attempt == 1
    attempts = await list_job_attempts(session=session, job_id=job_id)
    assert attempts[0].outcome == "permanent_failure"


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed_without_consuming_attempt(session, session_factory, clock) -> None:
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:a", payload=sms_payload())
    claimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=5000)

    assert await reclaim_expired_leases(session=session) == 0
    clock.advance(seconds=5)
    assert await reclaim_expired_leases(session=session) == 1

    row = await _job(session_factory, job_id)
    assert row.state == JobState.PENDING.value
    assert row.attempt == 0
    assert row.lease_token is None
    # The crashed holder can no longer complete the job.
    with pytest.raises(JobStateError):
        await ack_notification_job(session=session, job_id=job_id, lease_token=claimed.lease_token)
    reclaimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=5000)
    assert reclaimed.id == job_id
    assert reclaimed.lease_token != claimed.lease_token
    assert counters_snapshot()["leases_reclaimed"] == 1


def test_retry_backoff_is_exponential_and_capped() -> None:
    policy = QueuePolicy(max_attempts=10, backoff_base_ms=2000, backoff_cap_ms=10000, jitter_ms=0, lease_ms=1)
    assert [retry_backoff_ms(n, policy=policy) for n in (1, 2, 3, 4, 5)] == [2000, 4000, 8000, 10000, 10000]


def test_retry_backoff_jitter_stays_within_bounds() -> None:
    policy = QueuePolicy(max_attempts=3, backoff_base_ms=1000, backoff_cap_ms=5000, jitter_ms=250, lease_ms=1)
    rng = random.Random(7)
    values = [retry_backoff_ms(2, policy=policy, rng=rng) for _ in range(50)]
    assert all(2000 <= value <= 2250 for value in values)
    assert len(set(values)) > 1


@pytest.mark.asyncio
async def test_queue_depth_counts_outstanding_work(session, clock) -> None:
    await enqueue_notification_job(session=session, delay_signature="delay:1", payload=sms_payload())
    await enqueue_notification_job(session=session, delay_signature="delay:2", payload=sms_payload())
    await enqueue_notification_job(session=session, delay_signature="delay:3", payload=email_payload())
    claimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=1000)
    await ack_notification_job(session=session, job_id=claimed.id, lease_token=claimed.lease_token)

    assert await queue_depth_by_channel(session=session) == {"sms": 1, "email": 1}
    counts = await queue_state_counts(session=session)
    assert counts["sms"]["succeeded"] == 1
    assert counts["email"]["pending"] == 1
    assert counts["email"]["dead"] == 0
