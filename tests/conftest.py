"""
Shared fixtures: a throwaway SQLite database per test, seeded with a small
plan catalog, and service instances bound to it.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Point the process-wide settings at a scratch directory before linemeter is imported
_TMP_DIR = tempfile.mkdtemp(prefix="linemeter-tests-")
os.environ.setdefault("LINEMETER_DATA_DIRECTORY", _TMP_DIR)
os.environ.setdefault("LINEMETER_LOG_DIR", os.path.join(_TMP_DIR, "logs"))
os.environ.setdefault("LINEMETER_DATABASE_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'default.db')}")
os.environ.pop("LINEMETER_STRIPE_SECRET_KEY", None)

from sqlmodel import SQLModel  # noqa: E402

from linemeter.core.database import build_engine, get_session_context  # noqa: E402
from linemeter.core.errors.registry import error_registry  # noqa: E402
from linemeter.models.billing import (  # noqa: E402
    PeriodStatus,
    Plan,
    SubscriptionPeriod,
    UserAccount,
)
from linemeter.services.billing_cycle import BillingCycleReconciler  # noqa: E402
from linemeter.services.metering_service import MeteringService  # noqa: E402
from linemeter.services.payment_gateway import NullGateway  # noqa: E402
from linemeter.services.plan_catalog import PlanCatalog  # noqa: E402
from linemeter.services.subscription_service import SubscriptionService  # noqa: E402
from linemeter.services.trial_service import TrialService  # noqa: E402
from linemeter.services.usage_ledger import UsageLedger  # noqa: E402

error_registry.load()

UTC = timezone.utc
NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)

PLANS = [
    dict(
        id="free", name="free", display_name="Free",
        price=Decimal("0"), included_minutes=0, included_sms=0, included_numbers=1,
        sort_order=0,
    ),
    dict(
        id="starter", name="starter", display_name="Starter",
        price=Decimal("9.99"), included_minutes=100, included_sms=100, included_numbers=1,
        price_per_extra_minute=Decimal("0.02"), price_per_extra_sms=Decimal("0.01"),
        stripe_price_id="price_starter", sort_order=1,
    ),
    dict(
        id="pro", name="pro", display_name="Pro",
        price=Decimal("29.99"), included_minutes=1000, included_sms=1000, included_numbers=3,
        price_per_extra_minute=Decimal("0.015"), price_per_extra_sms=Decimal("0.0075"),
        stripe_price_id="price_pro", sort_order=2,
    ),
    dict(
        id="legacy", name="legacy", display_name="Legacy",
        price=Decimal("4.99"), included_minutes=50, included_sms=50,
        is_active=False, sort_order=3,
    ),
]


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'linemeter.db'}")
    SQLModel.metadata.create_all(eng)
    with get_session_context(eng) as session:
        for plan in PLANS:
            session.add(Plan(**plan))
        session.commit()
    yield eng
    eng.dispose()


@pytest.fixture
def metering(engine):
    return MeteringService(engine=engine, trial_minutes=50, trial_sms=50)


@pytest.fixture
def ledger(engine):
    return UsageLedger(engine=engine)


@pytest.fixture
def catalog(engine):
    return PlanCatalog(engine=engine)


@pytest.fixture
def reconciler(engine):
    return BillingCycleReconciler(engine=engine)


@pytest.fixture
def trials(engine):
    return TrialService(engine=engine, free_plan_id="free", trial_days=7, trial_period_days=30)


@pytest.fixture
def gateway():
    return NullGateway()


@pytest.fixture
def subscriptions(engine, gateway):
    return SubscriptionService(engine=engine, gateway=gateway)


@pytest.fixture
def make_period(engine):
    """Insert a period directly, bypassing the subscription flows."""

    def _make(
        user_id="u_1",
        plan_id="starter",
        status=PeriodStatus.ACTIVE.value,
        start=NOW - timedelta(days=10),
        end=None,
        minutes_used=0.0,
        sms_used=0,
        trial_end=None,
        stripe_customer_id=None,
    ):
        end = end or start + timedelta(days=30)
        with get_session_context(engine) as session:
            if session.get(UserAccount, user_id) is None:
                session.add(UserAccount(user_id=user_id, stripe_customer_id=stripe_customer_id))
            period = SubscriptionPeriod(
                user_id=user_id,
                plan_id=plan_id,
                status=status,
                period_start=start,
                period_end=end,
                trial_end=trial_end,
                minutes_used=minutes_used,
                sms_used=sms_used,
            )
            session.add(period)
            session.commit()
            session.refresh(period)
            return period

    return _make
