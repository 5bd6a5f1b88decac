from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from smartchat.apps.api.errors import (
    configuration_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from smartchat.apps.api.response import API_VERSION
from smartchat.apps.api.routes.chat import router as chat_router
from smartchat.apps.api.routes.health import router as health_router
from smartchat.core.config import get_settings
from smartchat.core.errors import ConfigurationError
from smartchat.core.logging import configure_logging
from smartchat.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(chat_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
