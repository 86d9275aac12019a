"""
Usage Router
============

POST /api/usage/track    record one metered event
GET  /api/usage/summary  allowances and counters for the live period
GET  /api/usage/history  newest-first ledger rows
GET  /api/usage/limits   allowance snapshot used before authorising a call/SMS
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from linemeter.auth.caller import get_current_user_id
from linemeter.routers.deps import get_metering_service, get_usage_ledger
from linemeter.services.metering_service import MeteringService
from linemeter.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class TrackUsageRequest(BaseModel):
    type: str = Field(..., description="Usage type: call-minute or sms")
    # Validated by the metering service so bad values map to LM-USG-002
    quantity: Union[float, int, str] = Field(..., description="Minutes (fractional) or SMS count")
    timestamp: Optional[datetime] = Field(default=None, description="Event time, defaults to now")


class UsageEventResponse(BaseModel):
    id: int
    user_id: str
    period_id: int
    usage_type: str
    quantity: float
    occurred_at: datetime
    recorded_at: datetime


class UsageHistoryResponse(BaseModel):
    user_id: str
    count: int
    events: List[UsageEventResponse]


def _event_response(event) -> UsageEventResponse:
    return UsageEventResponse(
        id=event.id,
        user_id=event.user_id,
        period_id=event.period_id,
        usage_type=event.usage_type,
        quantity=event.quantity,
        occurred_at=event.occurred_at,
        recorded_at=event.recorded_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/track",
    response_model=UsageEventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a usage event",
)
def track_usage(
    body: TrackUsageRequest,
    user_id: str = Depends(get_current_user_id),
    metering: MeteringService = Depends(get_metering_service),
):
    event = metering.record_usage(user_id, body.type, body.quantity, body.timestamp)
    return _event_response(event)


@router.get("/summary", summary="Usage summary for the live period")
def usage_summary(
    user_id: str = Depends(get_current_user_id),
    metering: MeteringService = Depends(get_metering_service),
) -> Dict[str, Any]:
    return metering.get_usage_summary(user_id)


@router.get("/limits", summary="Remaining allowances")
def usage_limits(
    user_id: str = Depends(get_current_user_id),
    metering: MeteringService = Depends(get_metering_service),
) -> Dict[str, Any]:
    return metering.check_usage_limits(user_id)


@router.get("/history", response_model=UsageHistoryResponse, summary="Usage history")
def usage_history(
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    type: Optional[str] = Query(default=None, description="call-minute or sms"),
    limit: Optional[int] = Query(default=None, ge=1),
    user_id: str = Depends(get_current_user_id),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    events = ledger.history(user_id, start=start_date, end=end_date, usage_type=type, limit=limit)
    return UsageHistoryResponse(
        user_id=user_id,
        count=len(events),
        events=[_event_response(e) for e in events],
    )
