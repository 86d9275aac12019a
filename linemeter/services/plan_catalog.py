"""
Plan Catalog
============

Read-only view over the ``plans`` table. Populated by an external seeding
process; the engine never writes it.

Plans are read from the database on every call: a catalog edit must be
visible to the next request without a restart.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import select

from linemeter.core.database import get_engine, get_session_context
from linemeter.core.errors import PlanNotFound
from linemeter.models.billing import Plan

logger = logging.getLogger(__name__)

__all__ = ["PlanCatalog", "plan_catalog"]


class PlanCatalog:
    """Ordered, active set of plans plus lookup by id."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def list_plans(self) -> List[Plan]:
        with get_session_context(self.engine) as session:
            stmt = (
                select(Plan)
                .where(Plan.is_active == True)  # noqa: E712
                .order_by(Plan.sort_order, Plan.id)
            )
            return list(session.exec(stmt).all())

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Return the plan, or None when unknown. Callers decide how to fail."""
        with get_session_context(self.engine) as session:
            return session.get(Plan, plan_id)

    def require_plan(self, plan_id: str, active_only: bool = False) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None or (active_only and not plan.is_active):
            raise PlanNotFound(detail=f"plan_id={plan_id}", context={"plan_id": plan_id})
        return plan


# Module-level singleton, bound to the process-wide engine
plan_catalog = PlanCatalog()
