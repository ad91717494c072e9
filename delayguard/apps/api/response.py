from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Listing endpoints report how many rows came back and the cap applied.
    count: int | None = None
    limit: int | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse the caller's X-Request-Id so ops queries can be traced end to end.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def success_response(
    *,
    request: Request,
    data: Any,
    limit: int | None = None,
) -> dict[str, Any]:
    # Envelope versioned routes only; the bare /health probe stays unwrapped.
    if not is_versioned_request(request):
        return data
    meta = ResponseMeta(
        request_id=get_request_id(request),
        count=len(data) if limit is not None else None,
        limit=limit,
    )
    return {"data": data, "meta": meta.model_dump(exclude_none=True)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump(exclude_none=True)}
