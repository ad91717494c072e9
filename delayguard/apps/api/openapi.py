from __future__ import annotations

from typing import Any

from delayguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, code: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=description)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _error_response("Not found", "NOT_FOUND"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR"),
    500: _error_response("Internal server error", "INTERNAL_ERROR"),
    503: _error_response("Storage unavailable", "STORAGE_UNAVAILABLE"),
}
