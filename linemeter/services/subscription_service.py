"""
Subscription Service: paid plan subscribe / cancel
===================================================

Both flows talk to the payment processor through an injected
PaymentGateway and then record the outcome on the user's periods and
account. The gateway call happens first: if the processor rejects the
request nothing is written locally, and if the local write fails after
subscribe succeeded at the processor, that subscription is cancelled again.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import select

from linemeter.core.database import get_engine, get_session_context
from linemeter.core.errors import NoActiveSubscription, PlanNotFound, SubscriptionAlreadyActive
from linemeter.models.billing import (
    PeriodStatus,
    Plan,
    SubscriptionPeriod,
    TrialStatus,
    UserAccount,
)
from linemeter.services.payment_gateway import (
    GatewaySubscription,
    PaymentGateway,
    build_payment_gateway,
)
from linemeter.utils.dates import add_months, to_utc

logger = logging.getLogger(__name__)

__all__ = ["SubscriptionService", "subscription_service"]


class SubscriptionService:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        gateway: Optional[PaymentGateway] = None,
    ) -> None:
        self._engine = engine
        self.gateway = gateway if gateway is not None else build_payment_gateway()

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def subscribe(
        self,
        user_id: str,
        plan_id: str,
        payment_method_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionPeriod:
        """
        Move *user_id* onto the paid *plan_id*.

        A running trial is closed and marked ``upgraded``; the new period
        starts at *now* with zeroed counters.
        """
        now = to_utc(now)

        with get_session_context(self.engine) as session:
            plan = session.get(Plan, plan_id)
            if plan is None or not plan.is_active:
                raise PlanNotFound(detail=f"plan_id={plan_id}", context={"plan_id": plan_id})

            live = session.exec(
                select(SubscriptionPeriod)
                .where(SubscriptionPeriod.user_id == user_id)
                .where(SubscriptionPeriod.status == PeriodStatus.ACTIVE.value)
            ).first()
            if live is not None:
                raise SubscriptionAlreadyActive(
                    detail=f"user_id={user_id} already on plan {live.plan_id}",
                    context={"user_id": user_id, "plan_id": live.plan_id},
                )

            account = session.get(UserAccount, user_id)
            if account is None:
                account = UserAccount(user_id=user_id)
                session.add(account)

            customer_id = self.gateway.ensure_customer(
                user_id, account.email, customer_id=account.stripe_customer_id,
            )
            external = self.gateway.create_subscription(
                customer_id, plan.stripe_price_id, payment_method_id=payment_method_id,
            )

            try:
                new_period = self._activate(session, account, plan, customer_id, external, now)
            except Exception:
                session.rollback()
                self._release_external(user_id, external.subscription_id)
                raise
            session.refresh(new_period)

        logger.info(
            "User %s subscribed to %s (gateway ref %s)",
            user_id, plan_id, external.subscription_id,
        )
        return new_period

    def _activate(
        self,
        session,
        account: UserAccount,
        plan: Plan,
        customer_id: str,
        external: GatewaySubscription,
        now: datetime,
    ) -> SubscriptionPeriod:
        """Close any trial and commit the new active period."""
        user_id = account.user_id
        trialing = session.exec(
            select(SubscriptionPeriod)
            .where(SubscriptionPeriod.user_id == user_id)
            .where(SubscriptionPeriod.status == PeriodStatus.TRIALING.value)
        ).all()
        for period in trialing:
            period.status = PeriodStatus.EXPIRED.value
            period.cancelled_at = now
            period.updated_at = now
            session.add(period)
        if trialing:
            account.trial_status = TrialStatus.UPGRADED.value
            # Free the partial unique index slot before inserting the new live row
            session.flush()

        period_end = add_months(now, 1)
        new_period = SubscriptionPeriod(
            user_id=user_id,
            plan_id=plan.id,
            status=PeriodStatus.ACTIVE.value,
            period_start=now,
            period_end=period_end,
            next_billing_date=period_end,
            external_payment_ref=external.subscription_id,
            created_at=now,
            updated_at=now,
        )
        session.add(new_period)

        account.stripe_customer_id = customer_id
        account.subscription_tier = plan.id
        account.updated_at = now

        session.commit()
        return new_period

    def _release_external(self, user_id: str, subscription_id: str) -> None:
        """Cancel a gateway subscription whose local period never got committed."""
        logger.error(
            "Subscribe for user %s failed after gateway subscription %s was created, cancelling it",
            user_id, subscription_id,
        )
        try:
            self.gateway.cancel_subscription(subscription_id)
        except Exception as exc:
            logger.error(
                "Could not cancel orphaned gateway subscription %s for user %s: %s",
                subscription_id, user_id, exc, exc_info=True,
            )

    def cancel(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionPeriod:
        """Cancel at period end. Metering stops immediately for the cancelled period."""
        now = to_utc(now)

        with get_session_context(self.engine) as session:
            period = session.exec(
                select(SubscriptionPeriod)
                .where(SubscriptionPeriod.user_id == user_id)
                .where(SubscriptionPeriod.status == PeriodStatus.ACTIVE.value)
            ).first()
            if period is None:
                raise NoActiveSubscription(detail=f"user_id={user_id}", context={"user_id": user_id})

            if period.external_payment_ref:
                self.gateway.cancel_subscription(period.external_payment_ref)

            period.status = PeriodStatus.CANCELLED.value
            period.cancelled_at = now
            period.updated_at = now
            session.add(period)
            session.commit()
            session.refresh(period)

        logger.info("User %s cancelled subscription, period %s", user_id, period.id)
        return period


subscription_service = SubscriptionService()
