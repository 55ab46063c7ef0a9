"""FastAPI middleware that gives every request a correlation id.

The id (taken from an inbound X-Request-ID header when the caller sent one)
is bound into structlog contextvars together with the method and path, so
every log line written while handling the request carries them. A completion
line with status code and duration is logged once the response is ready.
"""
from __future__ import annotations

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from structlog.contextvars import bind_contextvars, clear_contextvars

logger = structlog.get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID") -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:  # type: ignore[override]
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
        request.state.request_id = request_id

        started = time.perf_counter()
        try:
            response: Response = await call_next(request)
            logger.info(
                "Request finished",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        finally:
            # Always clear contextvars to avoid leaking to other requests
            clear_contextvars()

        response.headers[self.header_name] = request_id
        return response
