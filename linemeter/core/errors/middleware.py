"""
FastAPI exception handler for LineMeterError.

The response body comes from the registry entry only; the exception's
``detail`` and ``context`` go to the log, never to the client.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from linemeter.core.errors import LineMeterError
from linemeter.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Served when a code was raised that the registry does not know
_UNREGISTERED = ErrorEntry(
    code="LM-SYS-001",
    domain="SYS",
    title="Internal error",
    severity="ERROR",
    retryable=False,
    user_action_required=False,
    http_status=500,
    safe_message="An unexpected error occurred.",
)


async def linemeter_error_handler(request: Request, exc: LineMeterError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("Unregistered error code %s: %s", exc.code, exc.detail)
        body = _UNREGISTERED.to_body()
        body["code"] = exc.code
        return JSONResponse(status_code=_UNREGISTERED.http_status, content={"error": body})

    logger.log(
        _LOG_LEVELS.get(entry.severity, logging.ERROR),
        "%s [%s]: %s",
        entry.title, exc.code, exc.detail or "-",
        extra={
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )
    return JSONResponse(
        status_code=entry.http_status,
        content={"error": entry.to_body()},
        headers={"x-error-code": exc.code},
    )
