"""Request-logging middleware for the schema change API."""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("schema_api.access")

CORRELATION_HEADER: str = "X-Correlation-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status code, and duration of every request.

    The correlation id is taken from ``X-Correlation-ID`` or generated, and
    echoed back on the response so a caller can match an apply-changes
    report with the engine's log lines.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
            logger.log(
                level,
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={
                    "correlation_id": correlation_id,
                    "request": {
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": status_code,
                        "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    },
                },
            )
