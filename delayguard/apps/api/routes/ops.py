from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.apps.api.deps import get_db, get_tracking_backlog
from delayguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from delayguard.apps.api.response import SuccessEnvelope, success_response
from delayguard.domain.notifications import Channel, JobState
from delayguard.persistence.dialects import as_utc
from delayguard.services.notifications.ledger import get_delay_event, notified_channels
from delayguard.services.notifications.queue import (
    get_notification_job,
    list_job_attempts,
    list_notification_jobs,
    serialize_job,
)
from delayguard.services.reporter import collect_notification_metrics

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class NotificationJobResponse(BaseModel):
    id: str
    channel: str
    delay_signature: str
    order_id: str
    state: str
    attempt: int
    next_attempt_at: datetime | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class NotificationAttemptResponse(BaseModel):
    attempt_no: int
    outcome: str
    error: str | None = None
    latency_ms: int | None = None
    finished_at: datetime


class NotificationJobDetailResponse(NotificationJobResponse):
    attempts: list[NotificationAttemptResponse]


class DelayEventResponse(BaseModel):
    signature: str
    order_id: str
    tracking_number: str
    delay_reason: str
    delay_days: int
    first_seen_at: datetime | None = None
    notified_channels: dict[str, datetime]


@router.get("/notifications/summary", response_model=SuccessEnvelope[dict[str, Any]])
async def notifications_summary(
    request: Request,
    db: AsyncSession = Depends(get_db),
    tracking_backlog: int | None = Depends(get_tracking_backlog),
) -> dict:
    # Queue depth and state counts come from storage; counters are this process only.
    data = await collect_notification_metrics(session=db)
    data["tracking_queue_depth"] = tracking_backlog
    return success_response(request=request, data=data)


@router.get("/notifications/jobs", response_model=SuccessEnvelope[list[NotificationJobResponse]])
async def notification_jobs(
    request: Request,
    state: JobState | None = Query(default=None),
    channel: Channel | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_notification_jobs(session=db, state=state, channel=channel, limit=limit)
    data = [NotificationJobResponse(**serialize_job(row)).model_dump(mode="json") for row in rows]
    return success_response(request=request, data=data, limit=limit)


@router.get("/notifications/jobs/{job_id}", response_model=SuccessEnvelope[NotificationJobDetailResponse])
async def notification_job_detail(job_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    row = await get_notification_job(session=db, job_id=job_id)
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Notification job not found"})
    attempts = await list_job_attempts(session=db, job_id=job_id)
    payload = NotificationJobDetailResponse(
        **serialize_job(row),
        attempts=[
            NotificationAttemptResponse(
                attempt_no=attempt.attempt_no,
                outcome=attempt.outcome,
                error=attempt.error,
                latency_ms=attempt.latency_ms,
                finished_at=as_utc(attempt.finished_at),
            )
            for attempt in attempts
        ],
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))


@router.get("/delay-events/{signature}", response_model=SuccessEnvelope[DelayEventResponse])
async def delay_event_detail(signature: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    event = await get_delay_event(session=db, signature=signature)
    if event is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Delay event not found"})
    channels = await notified_channels(session=db, signature=signature)
    payload = DelayEventResponse(
        signature=event.signature,
        order_id=event.order_id,
        tracking_number=event.tracking_number,
        delay_reason=event.delay_reason,
        delay_days=event.delay_days,
        first_seen_at=as_utc(event.first_seen_at),
        notified_channels={channel.value: notified_at for channel, notified_at in channels.items()},
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))
