from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.core.config import get_settings
from delayguard.core.errors import DuplicateJobError
from delayguard.domain.notifications import Channel, EmailPayload, SmsPayload
from delayguard.domain.tracking import DelayVerdict, TrackingSnapshot
from delayguard.services.delay_detection import (
    compute_delay_signature,
    evaluate_delay,
    meets_delay_threshold,
)
from delayguard.services.notifications.ledger import has_notified, register_delay_event
from delayguard.services.notifications.queue import enqueue_notification_job
from delayguard.services.notifications.templates import build_template_vars
from delayguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CHANNEL_ORDER = (Channel.SMS, Channel.EMAIL)


@dataclass(frozen=True)
class CustomerContact:
    name: str | None = None
    phone: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class OrderContext:
    order_id: str
    order_number: str
    customer: CustomerContact
    enabled_channels: tuple[Channel, ...] = CHANNEL_ORDER
    # None falls back to DELAY_THRESHOLD_DAYS.
    delay_threshold_days: int | None = None


@dataclass
class PipelineOutcome:
    verdict: DelayVerdict
    signature: str | None = None
    enqueued: dict[Channel, str] = field(default_factory=dict)
    duplicates: list[Channel] = field(default_factory=list)
    skipped: dict[Channel, str] = field(default_factory=dict)


def _channel_globally_enabled(channel: Channel) -> bool:
    settings = get_settings()
    if channel == Channel.SMS:
        return settings.notify_sms_enabled
    return settings.notify_email_enabled


def _contact_for(channel: Channel, customer: CustomerContact) -> str | None:
    value = customer.phone if channel == Channel.SMS else customer.email
    return value.strip() if value and value.strip() else None


async def process_tracking_update(
    *,
    session: AsyncSession,
    snapshot: TrackingSnapshot,
    order: OrderContext,
) -> PipelineOutcome:
    """Turn one tracking snapshot into at most one notification job per channel.

    Error verdicts and sub-threshold slips end here without side effects.
    For qualifying delays the occurrence is registered in the ledger, then a
    job is enqueued per enabled channel that has contact details and has not
    already been notified. A duplicate enqueue is treated as already handled.
    Storage failures propagate to the caller.
    """
    verdict = evaluate_delay(snapshot)
    outcome = PipelineOutcome(verdict=verdict)
    if verdict.error is not None:
        logger.warning(
            "delay_check_input_error order_id=%s tracking_number=%s error=%s",
            order.order_id,
            snapshot.tracking_number,
            verdict.error,
        )
        return outcome
    threshold = order.delay_threshold_days
    if threshold is None:
        threshold = get_settings().delay_threshold_days
    if not meets_delay_threshold(verdict, threshold):
        logger.debug(
            "delay_check_no_notification order_id=%s reason=%s delay_days=%s",
            order.order_id,
            verdict.delay_reason.value,
            verdict.delay_days,
        )
        return outcome

    signature = compute_delay_signature(
        order_id=order.order_id,
        tracking_number=snapshot.tracking_number,
        delay_reason=verdict.delay_reason,
        delay_days=verdict.delay_days,
    )
    outcome.signature = signature
    await register_delay_event(
        session=session,
        signature=signature,
        order_id=order.order_id,
        tracking_number=snapshot.tracking_number,
        verdict=verdict,
    )
    template_vars = build_template_vars(
        snapshot=snapshot,
        verdict=verdict,
        customer_name=order.customer.name,
        order_number=order.order_number,
    )

    for channel in CHANNEL_ORDER:
        if channel not in order.enabled_channels or not _channel_globally_enabled(channel):
            outcome.skipped[channel] = "channel_disabled"
            continue
        contact = _contact_for(channel, order.customer)
        if contact is None:
            outcome.skipped[channel] = "missing_contact"
            continue
        if await has_notified(session=session, signature=signature, channel=channel):
            outcome.duplicates.append(channel)
            increment_counter("jobs_duplicate", channel=channel.value)
            continue
        if channel == Channel.SMS:
            payload: SmsPayload | EmailPayload = SmsPayload(
                order_id=order.order_id, to_phone=contact, template_vars=template_vars
            )
        else:
            payload = EmailPayload(order_id=order.order_id, to_email=contact, template_vars=template_vars)
        try:
            job_id = await enqueue_notification_job(session=session, delay_signature=signature, payload=payload)
        except DuplicateJobError:
            outcome.duplicates.append(channel)
            increment_counter("jobs_duplicate", channel=channel.value)
            logger.info("notification_job_duplicate signature=%s channel=%s", signature, channel.value)
            continue
        outcome.enqueued[channel] = job_id
    return outcome
