from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from delayguard.core.config import get_settings
from delayguard.domain.notifications import Channel, JobState
from delayguard.providers.channels.fake import FakeSmsSender
from delayguard.services import intake as intake_module
from delayguard.services.intake import (
    TrackingUpdateJob,
    get_worker_heartbeat,
    handle_tracking_update,
    set_worker_heartbeat,
)
from delayguard.services.notifications.dispatcher import ChannelDispatcher
from delayguard.services.notifications.queue import (
    claim_notification_job,
    enqueue_notification_job,
    get_notification_job,
)
from delayguard.tests.utils.factories import sms_payload
from delayguard.workers import notification_worker as worker_module


def _job(**overrides) -> TrackingUpdateJob:
    values = {
        "order_id": "order-77",
        "order_number": "1077",
        "customer_name": "Grace",
        "customer_phone": "+15555550111",
        "customer_email": "grace@example.com",
        "tracking_payload": {
            "tracking_number": "TRK77",
            "carrier_code": "usps",
            "status_code": "IT",
            "estimated_delivery_date": "2026-03-09",
            "original_estimated_delivery_date": "2026-03-06",
        },
    }
    values.update(overrides)
    return TrackingUpdateJob(**values)


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def get(self, key: str):  # noqa: ANN001
        value = self.values.get(key)
        return value.encode("utf-8") if value is not None else None


def test_order_context_honours_channel_flags() -> None:
    context = _job(sms_enabled=False, delay_threshold_days=2).order_context()
    assert context.enabled_channels == (Channel.EMAIL,)
    assert context.delay_threshold_days == 2
    assert context.customer.phone == "+15555550111"


@pytest.mark.asyncio
async def test_handle_tracking_update_runs_pipeline(session, clock) -> None:
    outcome = await handle_tracking_update(session=session, job=_job())
    assert outcome.verdict.delay_days == 3
    assert set(outcome.enqueued) == {Channel.SMS, Channel.EMAIL}


@pytest.mark.asyncio
async def test_worker_task_reports_outcomes(session_factory, clock, monkeypatch) -> None:
    monkeypatch.setattr(worker_module, "SessionLocal", session_factory)
    ctx: dict = {"job_try": 1}

    assert await worker_module.check_tracking_update(ctx, _job().model_dump(mode="json")) == "enqueued:2"
    # Replayed webhook: nothing new is enqueued.
    assert await worker_module.check_tracking_update(ctx, _job().model_dump(mode="json")) == "enqueued:0"
    missing_number = _job(tracking_payload={"status_code": "DL"}).model_dump(mode="json")
    assert await worker_module.check_tracking_update(ctx, missing_number) == "rejected"
    no_dates = _job(tracking_payload={"tracking_number": "TRK78", "status_code": "DL"}).model_dump(mode="json")
    assert await worker_module.check_tracking_update(ctx, no_dates) == "input_error"


@pytest.mark.asyncio
async def test_reclaim_cron_returns_expired_leases(session, session_factory, clock, monkeypatch) -> None:
    monkeypatch.setattr(worker_module, "SessionLocal", session_factory)
    await handle_tracking_update(session=session, job=_job())
    claimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=1000)
    assert claimed is not None

    clock.advance(seconds=2)
    assert await worker_module.reclaim_leases({}) == 1
    reclaimed = await claim_notification_job(session=session, channel=Channel.SMS, lease_ms=1000)
    assert reclaimed.id == claimed.id
    assert reclaimed.attempt == 0


def test_build_dispatchers_skips_unconfigured_channels(monkeypatch) -> None:
    monkeypatch.setenv("SMS_PROVIDER", "none")
    get_settings.cache_clear()
    dispatchers = worker_module.build_dispatchers()
    assert [dispatcher.channel for dispatcher in dispatchers] == [Channel.EMAIL]


@pytest.mark.asyncio
async def test_worker_heartbeat_round_trip(monkeypatch) -> None:
    fake = _FakeRedis()

    async def _pool():
        return fake

    monkeypatch.setattr(intake_module, "get_redis_pool", _pool)
    stamp = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    await set_worker_heartbeat(timestamp=stamp)
    assert await get_worker_heartbeat() == stamp


class _SlowSmsSender(FakeSmsSender):
    def __init__(self, delay_s: float) -> None:
        super().__init__()
        self._delay_s = delay_s
        self.started = asyncio.Event()
        self.finished = False

    async def send(self, message):  # noqa: ANN001
        self.started.set()
        await asyncio.sleep(self._delay_s)
        self.finished = True
        return await super().send(message)


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_send(session, session_factory, clock, monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_LEASE_DURATION_MS", "1000")
    get_settings.cache_clear()
    job_id = await enqueue_notification_job(session=session, delay_signature="delay:slow", payload=sms_payload())
    sender = _SlowSmsSender(delay_s=1.5)
    dispatcher = ChannelDispatcher(sender=sender, session_factory=session_factory, poll_interval_ms=10)
    run_task = asyncio.create_task(dispatcher.run())
    heartbeat_task = asyncio.create_task(asyncio.sleep(3600))
    ctx = {"dispatchers": [dispatcher], "dispatcher_tasks": [run_task], "heartbeat_task": heartbeat_task}
    await asyncio.wait_for(sender.started.wait(), timeout=5)

    await worker_module._shutdown(ctx)

    assert sender.finished
    assert run_task.done() and not run_task.cancelled()
    assert heartbeat_task.cancelled()
    async with session_factory() as check:
        job = await get_notification_job(session=check, job_id=job_id)
    assert job.state == JobState.SUCCEEDED.value
    assert len(sender.sent) == 1
