"""
Usage Ledger: query surface over the append-only ``usage_events`` table.

The ledger is the source of truth for counters. ``verify_counters`` is the
audit hook: it re-derives the current cycle's totals from the ledger and
reports drift against the period row without correcting it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from linemeter.config import settings
from linemeter.core.database import get_engine, get_session_context
from linemeter.core.errors import PeriodNotFound
from linemeter.models.billing import SubscriptionPeriod, UsageEvent, UsageType
from linemeter.services.metering_service import normalize_usage_type, round_sms_units
from linemeter.utils.dates import to_utc

logger = logging.getLogger(__name__)

__all__ = ["UsageLedger", "CounterCheck", "usage_ledger", "window_usage"]

# Float sums of fractional minutes; anything below this is rounding noise.
_MINUTES_TOLERANCE = 1e-6


def window_usage(
    session: Session,
    period_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Tuple[float, int]:
    """
    (minutes, sms) counted from the ledger for ``since <= occurred_at < until``.

    SMS is re-derived per event (each event was rounded on its own when
    counted), not by rounding the summed quantity.
    """
    stmt = select(UsageEvent.usage_type, UsageEvent.quantity).where(UsageEvent.period_id == period_id)
    if since is not None:
        stmt = stmt.where(UsageEvent.occurred_at >= to_utc(since))
    if until is not None:
        stmt = stmt.where(UsageEvent.occurred_at < to_utc(until))

    minutes = 0.0
    sms = 0
    for usage_type, quantity in session.exec(stmt).all():
        if usage_type == UsageType.CALL_MINUTE.value:
            minutes += quantity
        else:
            sms += round_sms_units(quantity)
    return minutes, sms


@dataclass(frozen=True)
class CounterCheck:
    """Ledger-vs-counter comparison for one period's current cycle."""

    period_id: int
    ledger_minutes: float
    ledger_sms: int
    counter_minutes: float
    counter_sms: int

    @property
    def minutes_drift(self) -> float:
        return self.counter_minutes - self.ledger_minutes

    @property
    def sms_drift(self) -> int:
        return self.counter_sms - self.ledger_sms

    @property
    def consistent(self) -> bool:
        return abs(self.minutes_drift) <= _MINUTES_TOLERANCE and self.sms_drift == 0


class UsageLedger:
    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def history(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        usage_type: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[UsageEvent]:
        """Newest-first ledger rows for *user_id*, optionally filtered."""
        cap = settings.usage_history_limit
        limit = cap if limit is None else max(0, min(limit, cap))

        stmt = select(UsageEvent).where(UsageEvent.user_id == user_id)
        if start is not None:
            stmt = stmt.where(UsageEvent.occurred_at >= to_utc(start))
        if end is not None:
            stmt = stmt.where(UsageEvent.occurred_at <= to_utc(end))
        if usage_type is not None:
            stmt = stmt.where(UsageEvent.usage_type == normalize_usage_type(usage_type).value)
        stmt = stmt.order_by(UsageEvent.occurred_at.desc(), UsageEvent.id.desc()).limit(limit)

        with get_session_context(self.engine) as session:
            return list(session.exec(stmt).all())

    def totals(
        self,
        period_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, float]:
        """Summed quantities per usage type for a period (optionally windowed)."""
        stmt = (
            select(UsageEvent.usage_type, func.coalesce(func.sum(UsageEvent.quantity), 0.0))
            .where(UsageEvent.period_id == period_id)
            .group_by(UsageEvent.usage_type)
        )
        if since is not None:
            stmt = stmt.where(UsageEvent.occurred_at >= to_utc(since))
        if until is not None:
            stmt = stmt.where(UsageEvent.occurred_at < to_utc(until))

        sums = {UsageType.CALL_MINUTE.value: 0.0, UsageType.SMS.value: 0.0}
        with get_session_context(self.engine) as session:
            for usage_type, total in session.exec(stmt).all():
                sums[usage_type] = float(total)
        return sums

    def verify_counters(self, period_id: int) -> CounterCheck:
        """Compare the period counters against the ledger for the current cycle."""
        with get_session_context(self.engine) as session:
            period = session.get(SubscriptionPeriod, period_id)
            if period is None:
                raise PeriodNotFound(detail=f"period_id={period_id}", context={"period_id": period_id})
            ledger_minutes, ledger_sms = window_usage(session, period_id, since=period.period_start)

        check = CounterCheck(
            period_id=period_id,
            ledger_minutes=ledger_minutes,
            ledger_sms=ledger_sms,
            counter_minutes=period.minutes_used,
            counter_sms=period.sms_used,
        )
        if not check.consistent:
            logger.warning(
                "ledger_counter_drift: period=%s minutes_drift=%s sms_drift=%s",
                period_id, check.minutes_drift, check.sms_drift,
            )
        return check


usage_ledger = UsageLedger()
