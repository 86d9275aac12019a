"""
Per-request logging context.

Binds request_id, correlation_id and the caller's user id (from the
``X-User-Id`` header forwarded by the auth layer) for the duration of a
request, logs one ``request_completed`` line and echoes the ids back in the
response headers.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from linemeter.core.structured_logging import correlation_id_var, request_id_var, user_id_var

logger = logging.getLogger(__name__)

# Health checks hit these every few seconds
_QUIET_PATHS = frozenset({"/health"})


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        correlation_id = request.headers.get("x-correlation-id") or request_id
        tokens = [
            (request_id_var, request_id_var.set(request_id)),
            (correlation_id_var, correlation_id_var.set(correlation_id)),
            (user_id_var, user_id_var.set(request.headers.get("x-user-id"))),
        ]

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            log = logger.debug if request.url.path in _QUIET_PATHS else logger.info
            log(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["x-request-id"] = request_id
        response.headers["x-correlation-id"] = correlation_id
        return response
