"""
Trial Service: one-time free trial per user
============================================

A trial is a ``trialing`` period on the free plan with fixed allowances
(see Settings.trial_minutes / trial_sms). The account's ``trial_status``
records that the trial was consumed and is never reset to ``none``.

TIMELINE:
    start   : period_start = now, trial_end = now + trial_days,
              period_end = now + trial_period_days
    expiry  : accounts with trial_ends_at <= now flip to ``expired`` and
              their trialing periods close. No charge is generated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import select

from linemeter.config import settings
from linemeter.core.database import get_engine, get_session_context, sqlite_retry
from linemeter.core.errors import AlreadyUsedTrial, PlanNotFound, SubscriptionAlreadyActive
from linemeter.models.billing import (
    NO_SUBSCRIPTION_TIER,
    PeriodStatus,
    Plan,
    SubscriptionPeriod,
    TrialStatus,
    UserAccount,
)
from linemeter.services.metering_service import find_live_period
from linemeter.utils.dates import to_utc

logger = logging.getLogger(__name__)

__all__ = ["TrialService", "TrialExpirySummary", "trial_service"]


@dataclass
class TrialExpirySummary:
    now: datetime
    expired: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "expired": len(self.expired),
            "failed": list(self.failed),
        }


class TrialService:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        free_plan_id: Optional[str] = None,
        trial_days: Optional[int] = None,
        trial_period_days: Optional[int] = None,
    ) -> None:
        self._engine = engine
        self.free_plan_id = free_plan_id or settings.free_plan_id
        self.trial_days = trial_days if trial_days is not None else settings.trial_days
        self.trial_period_days = (
            trial_period_days if trial_period_days is not None else settings.trial_period_days
        )

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def start_free_trial(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionPeriod:
        """
        Open the user's one-time trial.

        Raises:
            AlreadyUsedTrial: the account's trial_status is not ``none``.
            SubscriptionAlreadyActive: the user already has a live period.
            PlanNotFound: the free plan is missing from the catalog.
        """
        now = to_utc(now)

        with get_session_context(self.engine) as session:
            account = session.get(UserAccount, user_id)
            if account is None:
                account = UserAccount(user_id=user_id)
                session.add(account)

            if account.trial_status != TrialStatus.NONE.value:
                raise AlreadyUsedTrial(
                    detail=f"user_id={user_id} trial_status={account.trial_status}",
                    context={"user_id": user_id},
                )

            if find_live_period(session, user_id) is not None:
                raise SubscriptionAlreadyActive(
                    detail=f"user_id={user_id} already has a live period",
                    context={"user_id": user_id},
                )

            if session.get(Plan, self.free_plan_id) is None:
                raise PlanNotFound(
                    detail=f"free plan {self.free_plan_id!r} is not seeded",
                    context={"plan_id": self.free_plan_id},
                )

            trial_end = now + timedelta(days=self.trial_days)
            period = SubscriptionPeriod(
                user_id=user_id,
                plan_id=self.free_plan_id,
                status=PeriodStatus.TRIALING.value,
                period_start=now,
                period_end=now + timedelta(days=self.trial_period_days),
                trial_end=trial_end,
                created_at=now,
                updated_at=now,
            )
            session.add(period)

            account.trial_status = TrialStatus.ACTIVE.value
            account.trial_started_at = now
            account.trial_ends_at = trial_end
            account.subscription_tier = self.free_plan_id
            account.updated_at = now

            session.commit()
            session.refresh(period)

        logger.info("Started free trial for user %s, ends %s", user_id, trial_end.isoformat())
        return period

    def expire_trials(self, now: Optional[datetime] = None) -> TrialExpirySummary:
        """Close every trial whose end is at or before *now*."""
        now = to_utc(now)
        summary = TrialExpirySummary(now=now)

        with get_session_context(self.engine) as session:
            user_ids = list(
                session.exec(
                    select(UserAccount.user_id)
                    .where(UserAccount.trial_status == TrialStatus.ACTIVE.value)
                    .where(UserAccount.trial_ends_at <= now)
                    .order_by(UserAccount.trial_ends_at, UserAccount.user_id)
                ).all()
            )

        for user_id in user_ids:
            try:
                sqlite_retry(lambda: self._expire_one(user_id, now))
            except Exception as exc:
                summary.failed.append(user_id)
                logger.error("Failed to expire trial for user %s: %s", user_id, exc, exc_info=True)
                continue
            summary.expired.append(user_id)

        if user_ids:
            logger.info("Trial expiry summary: %s", summary.to_dict())
        return summary

    def _expire_one(self, user_id: str, now: datetime) -> None:
        with get_session_context(self.engine) as session:
            account = session.get(UserAccount, user_id)
            if account is None or account.trial_status != TrialStatus.ACTIVE.value:
                return

            account.trial_status = TrialStatus.EXPIRED.value
            account.subscription_tier = NO_SUBSCRIPTION_TIER
            account.updated_at = now

            session.connection().execute(
                update(SubscriptionPeriod)
                .where(SubscriptionPeriod.user_id == user_id)
                .where(SubscriptionPeriod.status == PeriodStatus.TRIALING.value)
                .values(
                    status=PeriodStatus.EXPIRED.value,
                    cancelled_at=now,
                    updated_at=now,
                )
            )
            session.commit()

        logger.info("Expired free trial for user %s", user_id)


trial_service = TrialService()
