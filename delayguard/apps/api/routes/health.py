from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from delayguard.apps.api.deps import get_db, get_heartbeat
from delayguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from delayguard.apps.api.response import SuccessEnvelope, success_response
from delayguard.services.reporter import health_status

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    reasons: list[str]
    storage_ok: bool
    worker_heartbeat_age_s: float | None = None
    expired_leases: int = 0


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    heartbeat: datetime | None = Depends(get_heartbeat),
) -> dict:
    # Degraded health still answers 200 so probes can read the reasons.
    payload = HealthResponse(**await health_status(session=db, heartbeat=heartbeat))
    return success_response(request=request, data=payload.model_dump())
