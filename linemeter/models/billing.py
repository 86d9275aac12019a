"""
Billing Models
==============

SQLModel tables for persistent metering state:
- Plan: catalog entry (price, included allowances, overage rates).
- SubscriptionPeriod: a user's current billing-cycle window and counters.
- UsageEvent: append-only ledger of metered events.
- UserAccount: the slice of the user record the engine reads and mutates
  (trial state, subscription tier, Stripe customer).

Timestamps are aware UTC. SQLite stores them as naive UTC text; UTCDateTime
puts the timezone back on read.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from linemeter.utils.dates import to_utc, utcnow


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always hands back aware UTC."""

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = to_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return to_utc(value)


class PeriodStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


LIVE_STATUSES = (PeriodStatus.ACTIVE.value, PeriodStatus.TRIALING.value)


class UsageType(str, Enum):
    CALL_MINUTE = "call-minute"
    SMS = "sms"


class TrialStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    EXPIRED = "expired"
    UPGRADED = "upgraded"


NO_SUBSCRIPTION_TIER = "none"


class Plan(SQLModel, table=True):
    """Subscription plan. Read-only to the engine; seeded externally."""

    __tablename__ = "plans"

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(max_length=64)
    display_name: str = Field(max_length=128)
    price: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    currency: str = Field(default="usd", max_length=8)
    included_minutes: int = Field(default=0)
    included_sms: int = Field(default=0)
    included_numbers: int = Field(default=1)
    price_per_extra_minute: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=4)
    price_per_extra_sms: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=4)
    stripe_price_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    is_active: bool = Field(default=True, index=True)
    sort_order: int = Field(default=0)


class SubscriptionPeriod(SQLModel, table=True):
    """Current billing-cycle state for a user.

    Counters are only ever changed through storage-side increments
    (``minutes_used = minutes_used + :q``), never read-modify-write.
    """

    __tablename__ = "subscription_periods"
    __table_args__ = (
        CheckConstraint("minutes_used >= 0", name="ck_periods_minutes_nonneg"),
        CheckConstraint("sms_used >= 0", name="ck_periods_sms_nonneg"),
        CheckConstraint("period_start < period_end", name="ck_periods_bounds"),
        # At most one live (active/trialing) period per user
        Index(
            "uq_periods_user_live",
            "user_id",
            unique=True,
            sqlite_where=text("status IN ('active', 'trialing')"),
            postgresql_where=text("status IN ('active', 'trialing')"),
        ),
        Index("ix_periods_status_end", "status", "period_end"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    plan_id: str = Field(foreign_key="plans.id", max_length=64)
    status: str = Field(default=PeriodStatus.ACTIVE.value, max_length=16)
    period_start: datetime = Field(sa_type=UTCDateTime)
    period_end: datetime = Field(sa_type=UTCDateTime)
    trial_end: Optional[datetime] = Field(default=None, nullable=True, sa_type=UTCDateTime)
    minutes_used: float = Field(default=0.0)
    sms_used: int = Field(default=0)
    external_payment_ref: Optional[str] = Field(default=None, nullable=True, max_length=255)
    next_billing_date: Optional[datetime] = Field(default=None, nullable=True, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class UsageEvent(SQLModel, table=True):
    """Append-only ledger entry. Never updated or deleted by the engine."""

    __tablename__ = "usage_events"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_usage_quantity_nonneg"),
        Index("ix_usage_period_type", "period_id", "usage_type"),
        Index("ix_usage_user_occurred", "user_id", "occurred_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=128)
    period_id: int = Field(foreign_key="subscription_periods.id")
    usage_type: str = Field(max_length=16)
    quantity: float = Field(default=0.0)
    occurred_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    recorded_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class UserAccount(SQLModel, table=True):
    """Engine-facing projection of the product's user record."""

    __tablename__ = "user_accounts"

    user_id: str = Field(primary_key=True, max_length=128)
    email: Optional[str] = Field(default=None, nullable=True, max_length=255)
    trial_status: str = Field(default=TrialStatus.NONE.value, index=True, max_length=16)
    trial_started_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=UTCDateTime)
    trial_ends_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=UTCDateTime)
    subscription_tier: str = Field(default=NO_SUBSCRIPTION_TIER, max_length=64)
    stripe_customer_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
