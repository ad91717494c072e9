from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from delayguard.apps.api.errors import (
    http_exception_handler,
    storage_unavailable_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from delayguard.apps.api.response import API_VERSION
from delayguard.apps.api.routes.health import router as health_router
from delayguard.apps.api.routes.ops import router as ops_router
from delayguard.core.errors import StorageUnavailableError
from delayguard.core.logging import configure_logging
from delayguard.services.telemetry import observe_histogram


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="DelayGuard Ops API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        observe_histogram("api_latency_ms", (time.monotonic() - start) * 1000.0)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StorageUnavailableError, storage_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Versioned routes carry the response envelope; bare /health stays a plain probe.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
