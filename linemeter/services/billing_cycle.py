"""
Billing Cycle Reconciler: Period Rollover & Overage Computation
================================================================

PURPOSE:
    1. **reset_elapsed_periods(now)** rolls every ``active`` period whose
       ``period_end <= now`` into its next calendar month, resets its
       counters and returns the closed-period totals with their overage.
    2. **compute_overage(period_id)** prices a period's current counters
       against its plan.

ROLLOVER RULES:
    - new period_start = old period_end
    - new period_end   = period_start + 1 calendar month (day clamped, so
      Jan 31 → Feb 28/29). Missed cycles are advanced in the same update
      until period_end > now, so re-running with the same ``now`` is a no-op.
    - Every elapsed month becomes its own ClosedPeriod, priced against one
      month of allowance. Months after the first take their usage from the
      ledger (by occurred_at); the first month gets the rest of the snapshot.
    - Counters are reset by subtracting the snapshot inside the UPDATE
      (``minutes_used = minutes_used - :snap``): an increment that lands
      between the snapshot read and the write is carried into the new cycle
      instead of being lost.
    - The UPDATE is guarded on the old period_end, so a concurrent roll of
      the same row turns into a skip.

FAILURE POLICY:
    Each period is rolled in its own transaction. A failure is logged and
    the batch moves on to the next period.

INVOICING:
    Not done here. The caller (billing_jobs.run_billing_cycle) turns
    non-zero overage into invoice items through the payment gateway.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import select

from linemeter.core.database import get_engine, get_session_context, sqlite_retry
from linemeter.core.errors import PeriodNotFound, PlanNotFound
from linemeter.models.billing import PeriodStatus, Plan, SubscriptionPeriod
from linemeter.services.usage_ledger import window_usage
from linemeter.utils.dates import add_months, to_utc, utcnow

logger = logging.getLogger(__name__)

__all__ = [
    "BillingCycleReconciler",
    "ClosedPeriod",
    "OverageCharge",
    "ReconcileSummary",
    "billing_cycle_reconciler",
    "calculate_overage",
    "closed_cycles",
    "next_period_bounds",
]

# Fractional minutes are summed as floats; trim representation noise before pricing.
_MINUTES_PRECISION = 6
_MINUTES_TOLERANCE = 1e-6


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class OverageCharge:
    """Usage beyond the plan allowance, priced per unit."""

    minutes_overage: float
    sms_overage: int
    minutes_charge: Decimal
    sms_charge: Decimal
    total_charge: Decimal
    currency: str = "usd"

    @property
    def amount_cents(self) -> int:
        """Total in minor units, rounded half-up, for invoice line items."""
        return int((self.total_charge * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def is_billable(self) -> bool:
        return self.total_charge > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minutes_overage": self.minutes_overage,
            "sms_overage": self.sms_overage,
            "minutes_charge": str(self.minutes_charge),
            "sms_charge": str(self.sms_charge),
            "total_charge": str(self.total_charge),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class ClosedPeriod:
    """Totals for one monthly cycle of a period that was just rolled over."""

    period_id: int
    user_id: str
    plan_id: str
    period_start: datetime
    period_end: datetime
    minutes_used: float
    sms_used: int
    overage: Optional[OverageCharge]


@dataclass
class ReconcileSummary:
    now: datetime
    closed: List[ClosedPeriod] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def rolled_period_ids(self) -> List[int]:
        return sorted({c.period_id for c in self.closed})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "rolled": len(self.rolled_period_ids),
            "cycles_closed": len(self.closed),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


def calculate_overage(plan: Plan, minutes_used: float, sms_used: int) -> OverageCharge:
    minutes_overage = round(max(0.0, float(minutes_used) - plan.included_minutes), _MINUTES_PRECISION)
    sms_overage = max(0, int(sms_used) - plan.included_sms)

    minutes_charge = _as_decimal(minutes_overage) * _as_decimal(plan.price_per_extra_minute)
    sms_charge = Decimal(sms_overage) * _as_decimal(plan.price_per_extra_sms)

    return OverageCharge(
        minutes_overage=minutes_overage,
        sms_overage=sms_overage,
        minutes_charge=minutes_charge,
        sms_charge=sms_charge,
        total_charge=minutes_charge + sms_charge,
        currency=plan.currency,
    )


def closed_cycles(
    period_start: datetime, period_end: datetime, now: datetime,
) -> List[Tuple[datetime, datetime]]:
    """Every monthly window of an elapsed period that has ended by *now*."""
    cycles = [(period_start, period_end)]
    start, end = period_end, add_months(period_end, 1)
    while end <= now:
        cycles.append((start, end))
        start, end = end, add_months(end, 1)
    return cycles


def next_period_bounds(period_end: datetime, now: datetime) -> tuple[datetime, datetime]:
    """Start/end of the cycle following *period_end* that is still open at *now*."""
    start = period_end
    end = add_months(start, 1)
    while end <= now:
        start, end = end, add_months(end, 1)
    return start, end


class BillingCycleReconciler:
    """Advances elapsed billing periods. Invoked by the scheduler, single-flight."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def reset_elapsed_periods(self, now: Optional[datetime] = None) -> ReconcileSummary:
        now = to_utc(now)
        summary = ReconcileSummary(now=now)

        with get_session_context(self.engine) as session:
            due_ids = list(
                session.exec(
                    select(SubscriptionPeriod.id)
                    .where(SubscriptionPeriod.status == PeriodStatus.ACTIVE.value)
                    .where(SubscriptionPeriod.period_end <= now)
                    .order_by(SubscriptionPeriod.period_end, SubscriptionPeriod.id)
                ).all()
            )

        if not due_ids:
            logger.info("Billing cycle: no elapsed periods at %s", now.isoformat())
            return summary

        logger.info("Billing cycle: %d elapsed periods at %s", len(due_ids), now.isoformat())

        for period_id in due_ids:
            try:
                closed = sqlite_retry(lambda: self._roll_period(period_id, now))
            except Exception as exc:
                summary.failed.append(period_id)
                logger.error(
                    "Failed to roll period %s: %s", period_id, exc, exc_info=True,
                )
                continue

            if closed:
                summary.closed.extend(closed)
            else:
                summary.skipped.append(period_id)

        if summary.failed:
            logger.warning(
                "Billing cycle finished with %d failures: %s",
                len(summary.failed), summary.failed,
            )
        logger.info("Billing cycle summary: %s", summary.to_dict())
        return summary

    def _cycle_usage(
        self,
        session,
        period_id: int,
        cycles: List[Tuple[datetime, datetime]],
        snap_minutes: float,
        snap_sms: int,
    ) -> List[Tuple[float, int]]:
        """Split the snapshot across *cycles*, one (minutes, sms) per cycle."""
        later = [window_usage(session, period_id, since=start, until=end) for start, end in cycles[1:]]
        later_minutes = sum(m for m, _ in later)
        later_sms = sum(s for _, s in later)
        if later_minutes - snap_minutes > _MINUTES_TOLERANCE or later_sms > snap_sms:
            logger.warning(
                "Period %s: ledger for missed cycles (minutes=%s sms=%s) exceeds counters "
                "(minutes=%s sms=%s)",
                period_id, later_minutes, later_sms, snap_minutes, snap_sms,
            )
        first = (
            round(max(0.0, snap_minutes - later_minutes), _MINUTES_PRECISION),
            max(0, snap_sms - later_sms),
        )
        return [first, *later]

    def _roll_period(self, period_id: int, now: datetime) -> List[ClosedPeriod]:
        with get_session_context(self.engine) as session:
            period = session.get(SubscriptionPeriod, period_id)
            if (
                period is None
                or period.status != PeriodStatus.ACTIVE.value
                or period.period_end > now
            ):
                return []

            user_id, plan_id = period.user_id, period.plan_id
            old_start, old_end = period.period_start, period.period_end
            snap_minutes, snap_sms = period.minutes_used, period.sms_used
            new_start, new_end = next_period_bounds(old_end, now)
            cycles = closed_cycles(old_start, old_end, now)
            usage = self._cycle_usage(session, period_id, cycles, snap_minutes, snap_sms)

            # Price before commit expires the loaded rows
            plan = session.get(Plan, plan_id)
            closed = [
                ClosedPeriod(
                    period_id=period_id,
                    user_id=user_id,
                    plan_id=plan_id,
                    period_start=start,
                    period_end=end,
                    minutes_used=minutes,
                    sms_used=sms,
                    overage=calculate_overage(plan, minutes, sms) if plan is not None else None,
                )
                for (start, end), (minutes, sms) in zip(cycles, usage)
            ]

            result = session.connection().execute(
                update(SubscriptionPeriod)
                .where(SubscriptionPeriod.id == period_id)
                .where(SubscriptionPeriod.status == PeriodStatus.ACTIVE.value)
                .where(SubscriptionPeriod.period_end == old_end)
                .values(
                    period_start=new_start,
                    period_end=new_end,
                    next_billing_date=new_end,
                    minutes_used=SubscriptionPeriod.minutes_used - snap_minutes,
                    sms_used=SubscriptionPeriod.sms_used - snap_sms,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info("Period %s already advanced, skipping", period_id)
                return []
            session.commit()

        if plan is None:
            logger.warning("Period %s references missing plan, overage not computed", period_id)

        logger.info(
            "Rolled period %s for user %s: %s → %s (%d cycles closed, minutes=%s sms=%s)",
            period_id, user_id, new_start.isoformat(), new_end.isoformat(),
            len(closed), snap_minutes, snap_sms,
        )
        return closed

    def compute_overage(self, period_id: int) -> OverageCharge:
        """Price the period's current counters against its plan."""
        with get_session_context(self.engine) as session:
            period = session.get(SubscriptionPeriod, period_id)
            if period is None:
                raise PeriodNotFound(detail=f"period_id={period_id}", context={"period_id": period_id})
            plan = session.get(Plan, period.plan_id)
            if plan is None:
                raise PlanNotFound(
                    detail=f"period {period_id} references missing plan {period.plan_id}",
                    context={"plan_id": period.plan_id},
                )
            return calculate_overage(plan, period.minutes_used, period.sms_used)


billing_cycle_reconciler = BillingCycleReconciler()
