from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.domain.models import DelayEvent, DelayEventNotification
from delayguard.domain.notifications import Channel
from delayguard.domain.tracking import DelayVerdict
from delayguard.persistence.dialects import as_utc, insert_ignoring_conflicts
from delayguard.persistence.guards import storage_errors


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Ledger timestamps share the queue's UTC clock so forensics line up across tables.
    return datetime.now(timezone.utc)


async def register_delay_event(
    *,
    session: AsyncSession,
    signature: str,
    order_id: str,
    tracking_number: str,
    verdict: DelayVerdict,
) -> datetime:
    """Record a delay occurrence once and return when it was first seen.

    Re-registering an existing signature is a no-op; the stored row keeps the
    original ``first_seen_at``.
    """
    async with storage_errors("register_delay_event"):
        stmt = insert_ignoring_conflicts(session, DelayEvent, index_elements=[DelayEvent.signature]).values(
            signature=signature,
            order_id=order_id,
            tracking_number=tracking_number,
            delay_reason=verdict.delay_reason.value,
            delay_days=verdict.delay_days,
            first_seen_at=_utc_now(),
        )
        result = await session.execute(stmt)
        await session.commit()
        if result.rowcount:
            logger.info("delay_event_registered signature=%s order_id=%s", signature, order_id)
        first_seen_at = await session.scalar(
            select(DelayEvent.first_seen_at).where(DelayEvent.signature == signature)
        )
    return as_utc(first_seen_at)


async def first_seen(*, session: AsyncSession, signature: str) -> datetime | None:
    async with storage_errors("first_seen"):
        value = await session.scalar(select(DelayEvent.first_seen_at).where(DelayEvent.signature == signature))
    return as_utc(value)


async def get_delay_event(*, session: AsyncSession, signature: str) -> DelayEvent | None:
    async with storage_errors("get_delay_event"):
        return await session.get(DelayEvent, signature)


async def has_notified(*, session: AsyncSession, signature: str, channel: Channel) -> bool:
    async with storage_errors("has_notified"):
        row = await session.scalar(
            select(DelayEventNotification.signature).where(
                DelayEventNotification.signature == signature,
                DelayEventNotification.channel == Channel(channel).value,
            )
        )
    return row is not None


async def record_notified(
    *,
    session: AsyncSession,
    signature: str,
    channel: Channel,
    at: datetime | None = None,
    job_id: str | None = None,
) -> bool:
    # Atomic check-and-set on (signature, channel); False means another writer recorded it first.
    async with storage_errors("record_notified"):
        stmt = insert_ignoring_conflicts(
            session,
            DelayEventNotification,
            index_elements=[DelayEventNotification.signature, DelayEventNotification.channel],
        ).values(
            signature=signature,
            channel=Channel(channel).value,
            notified_at=at or _utc_now(),
            job_id=job_id,
        )
        result = await session.execute(stmt)
        await session.commit()
    return bool(result.rowcount)


async def notified_channels(*, session: AsyncSession, signature: str) -> dict[Channel, datetime]:
    async with storage_errors("notified_channels"):
        rows = (
            await session.execute(
                select(DelayEventNotification.channel, DelayEventNotification.notified_at).where(
                    DelayEventNotification.signature == signature
                )
            )
        ).all()
    return {Channel(channel): as_utc(notified_at) for channel, notified_at in rows}
