"""
Subscriptions Router
====================

GET  /api/subscriptions/current  live period plus allowance snapshot
POST /api/subscriptions/trial    start the one-time free trial
POST /api/subscriptions          subscribe to a paid plan
POST /api/subscriptions/cancel   cancel the active subscription
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from linemeter.auth.caller import get_current_user_id
from linemeter.routers.deps import (
    get_metering_service,
    get_subscription_service,
    get_trial_service,
)
from linemeter.services.metering_service import MeteringService
from linemeter.services.trial_service import TrialService

logger = logging.getLogger(__name__)

router = APIRouter()


class SubscribeRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=64)
    payment_method_id: Optional[str] = None


class PeriodResponse(BaseModel):
    id: int
    user_id: str
    plan_id: str
    status: str
    period_start: datetime
    period_end: datetime
    trial_end: Optional[datetime] = None
    minutes_used: float
    sms_used: int
    next_billing_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[PeriodResponse] = None
    limits: Dict[str, Any]


def _period_response(period) -> PeriodResponse:
    return PeriodResponse.model_validate(period, from_attributes=True)


@router.get("/current", response_model=CurrentSubscriptionResponse)
def current_subscription(
    user_id: str = Depends(get_current_user_id),
    metering: MeteringService = Depends(get_metering_service),
):
    period = metering.get_current_period(user_id)
    return CurrentSubscriptionResponse(
        subscription=_period_response(period) if period is not None else None,
        limits=metering.check_usage_limits(user_id),
    )


@router.post(
    "/trial",
    response_model=PeriodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start the free trial",
)
def start_trial(
    user_id: str = Depends(get_current_user_id),
    trials: TrialService = Depends(get_trial_service),
):
    return _period_response(trials.start_free_trial(user_id))


@router.post(
    "",
    response_model=PeriodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe to a paid plan",
)
def subscribe(
    body: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    subscriptions=Depends(get_subscription_service),
):
    period = subscriptions.subscribe(
        user_id, body.plan_id, payment_method_id=body.payment_method_id,
    )
    return _period_response(period)


@router.post("/cancel", response_model=PeriodResponse, summary="Cancel the active subscription")
def cancel(
    user_id: str = Depends(get_current_user_id),
    subscriptions=Depends(get_subscription_service),
):
    return _period_response(subscriptions.cancel(user_id))
