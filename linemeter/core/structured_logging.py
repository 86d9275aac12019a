"""
Structured logging for the API and the billing jobs.

Every record, whether emitted through structlog or through a plain
``logging.getLogger(__name__)``, is rendered as one JSON line carrying:

    ts, level, logger, event, service, version
    request_id / correlation_id   (HTTP requests, set by CorrelationMiddleware)
    user_id                       (caller of the current request)
    job                           (billing_cycle / trial_expiry runs)

``extra={...}`` fields passed to stdlib loggers are lifted into the JSON
object, so ``logger.warning("usage_limit_exceeded", extra={"user_id": u})``
is queryable without parsing the message.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from contextvars import ContextVar
from typing import Optional

import structlog

from linemeter import __version__

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
job_name_var: ContextVar[Optional[str]] = ContextVar("job_name", default=None)

APP_VERSION = __version__
SERVICE_NAME = "linemeter"

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("correlation_id", correlation_id_var),
    ("user_id", user_id_var),
    ("job", job_name_var),
)

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "stripe", "sqlalchemy.engine", "alembic.runtime")

_started_at = time.monotonic()


def get_uptime_s() -> float:
    return time.monotonic() - _started_at


def add_service_context(logger, method_name: str, event_dict: dict) -> dict:
    """Stamp service identity and any correlation ids bound for this task."""
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("version", APP_VERSION)
    for key, var in _CONTEXT_FIELDS:
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def _level_to_lower(logger, method_name: str, event_dict: dict) -> dict:
    if "level" in event_dict:
        event_dict["level"] = str(event_dict["level"]).lower()
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _level_to_lower,
        structlog.stdlib.add_logger_name,
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
    ]


def _rotating_file_handler(
    log_dir: str, log_file: str, max_bytes: int, backup_count: int,
) -> Optional[logging.Handler]:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        # Read-only container filesystems: stderr still gets everything
        sys.stderr.write(f"linemeter: file logging disabled ({exc})\n")
        return None


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "linemeter.jsonl",
    log_level: int | str = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    json_console: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Called once by the API lifespan and by the job CLI. ``json_console=False``
    swaps stderr output to the human-readable console renderer for local runs.
    """
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    def formatter(renderer) -> structlog.stdlib.ProcessorFormatter:
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*shared, structlog.stdlib.ExtraAdder()],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )

    json_formatter = formatter(structlog.processors.JSONRenderer())

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        json_formatter if json_console else formatter(structlog.dev.ConsoleRenderer(colors=False))
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    root.addHandler(console)

    file_handler = _rotating_file_handler(log_dir, log_file, max_bytes, backup_count)
    if file_handler is not None:
        file_handler.setFormatter(json_formatter)
        root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
