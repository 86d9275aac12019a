"""
Plans Router
============

GET /api/plans            active plans, display order
GET /api/plans/{plan_id}  single plan (404 when unknown)
"""

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from linemeter.core.errors import PlanNotFound
from linemeter.routers.deps import get_plan_catalog
from linemeter.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

router = APIRouter()


class PlanResponse(BaseModel):
    id: str
    name: str
    display_name: str
    price: Decimal
    currency: str
    included_minutes: int
    included_sms: int
    included_numbers: int
    price_per_extra_minute: Decimal
    price_per_extra_sms: Decimal
    stripe_price_id: Optional[str] = None
    is_active: bool


def _plan_response(plan) -> PlanResponse:
    return PlanResponse.model_validate(plan, from_attributes=True)


@router.get("", response_model=List[PlanResponse], summary="List active plans")
def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    return [_plan_response(p) for p in catalog.list_plans()]


@router.get("/{plan_id}", response_model=PlanResponse, summary="Get a plan")
def get_plan(plan_id: str, catalog: PlanCatalog = Depends(get_plan_catalog)):
    plan = catalog.get_plan(plan_id)
    if plan is None:
        raise PlanNotFound(detail=f"plan_id={plan_id}", context={"plan_id": plan_id})
    return _plan_response(plan)
