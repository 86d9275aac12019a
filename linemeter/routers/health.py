"""Liveness endpoint. No database or network calls."""

from datetime import datetime, timezone

from fastapi import APIRouter

from linemeter.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

router = APIRouter()

@router.get("/health")
async def health_check():
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
