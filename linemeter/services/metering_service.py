"""
Metering Service: Usage Recording & Allowance Checks
=====================================================

PURPOSE:
    1. **record_usage()** appends one immutable UsageEvent to the ledger
       and bumps the matching counter on the user's live period, in a
       single transaction.
    2. **check_usage_limits()** is a pure read of the live period and its plan
       (or the fixed trial allowances). Request handlers call it before
       authorising a call, SMS or number purchase.

COUNTER RULES:
    - call-minute → ``minutes_used += quantity`` (fractional minutes kept)
    - sms         → ``sms_used += round_half_up(quantity)``
    - Increments are executed in SQL (``col = col + :q``) so concurrent
      requests for the same user never lose an update.
    - quantity == 0 still appends a ledger row (audit) but touches no counter.

OVERAGE POLICY:
    Usage is never rejected for exceeding the included allowance; it is
    logged as ``usage_limit_exceeded`` and shows up as 0 remaining. The only
    hard stop is the absence of a live (active/trialing) period.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session as SQLModelSession, select

from linemeter.config import settings
from linemeter.core.database import get_engine, get_session_context
from linemeter.core.errors import (
    InvalidQuantity,
    InvalidUsageType,
    NoActiveSubscription,
    PlanNotFound,
)
from linemeter.models.billing import (
    LIVE_STATUSES,
    PeriodStatus,
    Plan,
    SubscriptionPeriod,
    UsageEvent,
    UsageType,
)
from linemeter.utils.dates import to_utc, utcnow

logger = logging.getLogger(__name__)

__all__ = [
    "MeteringService",
    "metering_service",
    "normalize_usage_type",
    "round_sms_units",
    "find_live_period",
]

# Legacy request payloads used "call"; keep accepting them.
_USAGE_TYPE_ALIASES: Dict[str, UsageType] = {
    "call-minute": UsageType.CALL_MINUTE,
    "call_minute": UsageType.CALL_MINUTE,
    "call": UsageType.CALL_MINUTE,
    "minutes": UsageType.CALL_MINUTE,
    "sms": UsageType.SMS,
}

_SECONDS_PER_DAY = 86400


def normalize_usage_type(usage_type: Any) -> UsageType:
    if isinstance(usage_type, UsageType):
        return usage_type
    if isinstance(usage_type, str):
        kind = _USAGE_TYPE_ALIASES.get(usage_type.strip().lower())
        if kind is not None:
            return kind
    raise InvalidUsageType(
        detail=f"usage_type={usage_type!r}",
        context={"usage_type": str(usage_type)},
    )


def _validate_quantity(quantity: Any) -> float:
    if isinstance(quantity, bool) or not isinstance(quantity, (int, float, Decimal)):
        raise InvalidQuantity(detail=f"quantity={quantity!r} is not a number")
    value = float(quantity)
    if not math.isfinite(value) or value < 0:
        raise InvalidQuantity(
            detail=f"quantity={quantity!r} must be a finite non-negative number",
            context={"quantity": str(quantity)},
        )
    return value


def round_sms_units(quantity: float) -> int:
    """SMS counters are whole units, rounded half-up (2.5 → 3)."""
    return int(Decimal(str(quantity)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def find_live_period(session: SQLModelSession, user_id: str) -> Optional[SubscriptionPeriod]:
    """The user's single active/trialing period, if any."""
    stmt = (
        select(SubscriptionPeriod)
        .where(SubscriptionPeriod.user_id == user_id)
        .where(SubscriptionPeriod.status.in_(LIVE_STATUSES))
        .order_by(SubscriptionPeriod.id.desc())
    )
    return session.exec(stmt).first()


class MeteringService:
    """
    Applies usage events to the ledger and the live period's counters.

    Construct once at startup and share; holds no per-user state.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        trial_minutes: Optional[int] = None,
        trial_sms: Optional[int] = None,
    ) -> None:
        self._engine = engine
        self._trial_minutes = trial_minutes if trial_minutes is not None else settings.trial_minutes
        self._trial_sms = trial_sms if trial_sms is not None else settings.trial_sms

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    @property
    def trial_minutes(self) -> int:
        return self._trial_minutes

    @property
    def trial_sms(self) -> int:
        return self._trial_sms

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def record_usage(
        self,
        user_id: str,
        usage_type: Any,
        quantity: Any,
        timestamp: Optional[datetime] = None,
    ) -> UsageEvent:
        """
        Record one metered event for *user_id*.

        Raises:
            InvalidUsageType: *usage_type* is not call-minute or sms.
            InvalidQuantity: *quantity* is negative or not a finite number.
            NoActiveSubscription: the user has no active/trialing period;
                nothing is written.
        """
        kind = normalize_usage_type(usage_type)
        value = _validate_quantity(quantity)
        occurred_at = to_utc(timestamp)

        with get_session_context(self.engine) as session:
            period = find_live_period(session, user_id)
            if period is None:
                logger.info("Usage rejected, no live period: user=%s type=%s", user_id, kind.value)
                raise NoActiveSubscription(
                    detail=f"user_id={user_id}",
                    context={"user_id": user_id},
                )

            period_id = period.id
            event = UsageEvent(
                user_id=user_id,
                period_id=period_id,
                usage_type=kind.value,
                quantity=value,
                occurred_at=occurred_at,
            )
            session.add(event)
            session.flush()

            increments: Dict[str, Any] = {}
            if kind is UsageType.CALL_MINUTE and value > 0:
                increments["minutes_used"] = SubscriptionPeriod.minutes_used + value
            elif kind is UsageType.SMS:
                units = round_sms_units(value)
                if units > 0:
                    increments["sms_used"] = SubscriptionPeriod.sms_used + units

            if increments:
                result = session.connection().execute(
                    update(SubscriptionPeriod)
                    .where(SubscriptionPeriod.id == period_id)
                    .where(SubscriptionPeriod.status.in_(LIVE_STATUSES))
                    .values(**increments, updated_at=utcnow())
                )
                if result.rowcount != 1:
                    # Period was closed between lookup and increment
                    session.rollback()
                    raise NoActiveSubscription(
                        detail=f"user_id={user_id} period {period_id} closed concurrently",
                        context={"user_id": user_id, "period_id": period_id},
                    )

            session.commit()
            session.refresh(event)

        logger.info(
            "Recorded usage: user=%s period=%s type=%s quantity=%s",
            user_id, period_id, kind.value, value,
        )
        self._warn_if_over_allowance(user_id, kind)
        return event

    def _warn_if_over_allowance(self, user_id: str, kind: UsageType) -> None:
        with get_session_context(self.engine) as session:
            period = find_live_period(session, user_id)
            if period is None:
                return
            if period.status == PeriodStatus.TRIALING.value:
                minutes_allowed, sms_allowed = self._trial_minutes, self._trial_sms
            else:
                plan = session.get(Plan, period.plan_id)
                if plan is None:
                    return
                minutes_allowed, sms_allowed = plan.included_minutes, plan.included_sms

        if kind is UsageType.CALL_MINUTE:
            used, allowed = period.minutes_used, minutes_allowed
        else:
            used, allowed = period.sms_used, sms_allowed

        if used > allowed:
            logger.warning(
                "usage_limit_exceeded: user=%s type=%s used=%s included=%s",
                user_id, kind.value, used, allowed,
            )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get_current_period(self, user_id: str) -> Optional[SubscriptionPeriod]:
        with get_session_context(self.engine) as session:
            return find_live_period(session, user_id)

    def check_usage_limits(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Snapshot of allowances for *user_id*, derived from persisted state.

        Never mutates. Remaining values are clamped at 0.
        """
        now = to_utc(now)

        with get_session_context(self.engine) as session:
            period = find_live_period(session, user_id)
            if period is None:
                return {"has_subscription": False}

            if period.status == PeriodStatus.TRIALING.value:
                trial_end = period.trial_end or period.period_end
                seconds_left = (trial_end - now).total_seconds()
                return {
                    "is_trial": True,
                    "minutes_remaining": max(0, self._trial_minutes - period.minutes_used),
                    "sms_remaining": max(0, self._trial_sms - period.sms_used),
                    "days_remaining": max(0, math.ceil(seconds_left / _SECONDS_PER_DAY)),
                }

            plan = session.get(Plan, period.plan_id)
            if plan is None:
                raise PlanNotFound(
                    detail=f"period {period.id} references missing plan {period.plan_id}",
                    context={"plan_id": period.plan_id, "period_id": period.id},
                )

            return {
                "has_subscription": True,
                "plan": plan.display_name,
                "minutes_used": period.minutes_used,
                "minutes_included": plan.included_minutes,
                "minutes_remaining": max(0, plan.included_minutes - period.minutes_used),
                "sms_used": period.sms_used,
                "sms_included": plan.included_sms,
                "sms_remaining": max(0, plan.included_sms - period.sms_used),
                "will_renew_at": period.period_end,
            }

    def get_usage_summary(self, user_id: str) -> Dict[str, Any]:
        limits = self.check_usage_limits(user_id)
        if not limits.get("has_subscription") and not limits.get("is_trial"):
            return {"has_subscription": False, "usage": None}
        return limits


# Module-level singleton, bound to the process-wide engine
metering_service = MeteringService()
