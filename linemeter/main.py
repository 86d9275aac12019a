"""
linemeter API
=============

FastAPI application exposing usage metering, plans and subscription flows.
Run with ``uvicorn linemeter.main:app``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from linemeter import __version__
from linemeter.config import settings
from linemeter.core.database import close_db, init_db
from linemeter.core.errors import ERROR_CLASSES, LineMeterError
from linemeter.core.errors.middleware import linemeter_error_handler
from linemeter.core.errors.registry import error_registry
from linemeter.core.log_middleware import CorrelationMiddleware
from linemeter.core.structured_logging import setup_logging
from linemeter.routers import health, plans, subscriptions, usage

logger = logging.getLogger(__name__)

API_TITLE = "linemeter API"

TAGS_METADATA = [
    {"name": "usage", "description": "Record metered calls and SMS, read allowances and history."},
    {"name": "plans", "description": "Subscription plan catalog."},
    {"name": "subscriptions", "description": "Free trial, subscribe and cancel."},
    {"name": "health", "description": "Liveness."},
]


async def billing_jobs_loop(interval_s: int) -> None:
    """Run the billing-cycle and trial-expiry jobs every *interval_s* seconds."""
    from linemeter.services.billing_jobs import run_billing_cycle, run_trial_expiry

    while True:
        for job in (run_billing_cycle, run_trial_expiry):
            try:
                await asyncio.to_thread(job)
            except Exception as exc:
                logger.error("Scheduled job %s failed: %s", job.__name__, exc, exc_info=True)
        await asyncio.sleep(interval_s)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    setup_logging(
        log_dir=settings.log_dir,
        log_file=settings.log_file,
        log_level=settings.log_level,
        json_console=not settings.debug,
    )
    logger.info("Starting %s v%s...", API_TITLE, __version__)

    error_registry.load()
    unregistered = error_registry.missing(cls.code for cls in ERROR_CLASSES)
    if unregistered:
        logger.warning("Error codes without registry entries: %s", unregistered)
    init_db()

    jobs_task = None
    if settings.jobs_enabled:
        jobs_task = asyncio.create_task(billing_jobs_loop(settings.jobs_interval_s))
        logger.info("In-process billing jobs enabled, interval=%ss", settings.jobs_interval_s)

    yield

    if jobs_task is not None:
        jobs_task.cancel()
        try:
            await jobs_task
        except asyncio.CancelledError:
            logger.info("Billing jobs loop cancelled")

    close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=API_TITLE,
        version=__version__,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(LineMeterError, linemeter_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception on %s %s: %s",
            request.method, request.url.path, exc, exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    app.include_router(health.router, tags=["health"])
    app.include_router(usage.router, prefix="/api/usage", tags=["usage"])
    app.include_router(plans.router, prefix="/api/plans", tags=["plans"])
    app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])

    return app


app = create_app()
