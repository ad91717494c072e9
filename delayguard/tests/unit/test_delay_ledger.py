from __future__ import annotations

import pytest

from delayguard.domain.notifications import Channel
from delayguard.domain.tracking import DelayReason, DelayVerdict
from delayguard.services.notifications.ledger import (
    first_seen,
    get_delay_event,
    has_notified,
    notified_channels,
    record_notified,
    register_delay_event,
)

VERDICT = DelayVerdict(is_delayed=True, delay_days=3, delay_reason=DelayReason.DATE_SLIP)


@pytest.mark.asyncio
async def test_register_is_insert_if_absent(session, clock) -> None:
    seen_at = await register_delay_event(
        session=session, signature="delay:a", order_id="order-1", tracking_number="TRK1", verdict=VERDICT
    )
    assert seen_at == clock.now
    clock.advance(minutes=10)
    again = await register_delay_event(
        session=session, signature="delay:a", order_id="order-1", tracking_number="TRK1", verdict=VERDICT
    )
    assert again == seen_at
    assert await first_seen(session=session, signature="delay:a") == seen_at
    event = await get_delay_event(session=session, signature="delay:a")
    assert (event.delay_reason, event.delay_days) == ("date_slip", 3)


@pytest.mark.asyncio
async def test_first_seen_unknown_signature(session) -> None:
    assert await first_seen(session=session, signature="delay:missing") is None


@pytest.mark.asyncio
async def test_record_notified_is_idempotent_per_channel(session, clock) -> None:
    assert await has_notified(session=session, signature="delay:a", channel=Channel.SMS) is False
    assert await record_notified(session=session, signature="delay:a", channel=Channel.SMS, job_id="job-1") is True
    assert await record_notified(session=session, signature="delay:a", channel=Channel.SMS, job_id="job-2") is False
    assert await has_notified(session=session, signature="delay:a", channel=Channel.SMS) is True
    assert await has_notified(session=session, signature="delay:a", channel=Channel.EMAIL) is False

    await record_notified(session=session, signature="delay:a", channel=Channel.EMAIL)
    channels = await notified_channels(session=session, signature="delay:a")
    assert set(channels) == {Channel.SMS, Channel.EMAIL}
    assert channels[Channel.SMS] == clock.now
