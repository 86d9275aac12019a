"""initial metering and billing tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_LIVE = sa.text("status IN ('active', 'trialing')")


def upgrade() -> None:
    # --- plans ---
    op.create_table(
        "plans",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="usd"),
        sa.Column("included_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("included_sms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("included_numbers", sa.Integer, nullable=False, server_default="1"),
        sa.Column("price_per_extra_minute", sa.Numeric(10, 4), nullable=False, server_default="0"),
        sa.Column("price_per_extra_sms", sa.Numeric(10, 4), nullable=False, server_default="0"),
        sa.Column("stripe_price_id", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_plans_is_active", "plans", ["is_active"])

    # --- subscription_periods ---
    op.create_table(
        "subscription_periods",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("plan_id", sa.String(64), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("minutes_used", sa.Float, nullable=False, server_default="0"),
        sa.Column("sms_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("external_payment_ref", sa.String(255), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("minutes_used >= 0", name="ck_periods_minutes_nonneg"),
        sa.CheckConstraint("sms_used >= 0", name="ck_periods_sms_nonneg"),
        sa.CheckConstraint("period_start < period_end", name="ck_periods_bounds"),
    )
    op.create_index("ix_subscription_periods_user_id", "subscription_periods", ["user_id"])
    op.create_index("ix_periods_status_end", "subscription_periods", ["status", "period_end"])
    op.create_index(
        "uq_periods_user_live",
        "subscription_periods",
        ["user_id"],
        unique=True,
        sqlite_where=_LIVE,
        postgresql_where=_LIVE,
    )

    # --- usage_events ---
    op.create_table(
        "usage_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column(
            "period_id", sa.Integer, sa.ForeignKey("subscription_periods.id"), nullable=False,
        ),
        sa.Column("usage_type", sa.String(16), nullable=False),
        sa.Column("quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_usage_quantity_nonneg"),
    )
    op.create_index("ix_usage_period_type", "usage_events", ["period_id", "usage_type"])
    op.create_index("ix_usage_user_occurred", "usage_events", ["user_id", "occurred_at"])

    # --- user_accounts ---
    op.create_table(
        "user_accounts",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("trial_status", sa.String(16), nullable=False, server_default="none"),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_tier", sa.String(64), nullable=False, server_default="none"),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_user_accounts_trial_status", "user_accounts", ["trial_status"])


def downgrade() -> None:
    op.drop_index("ix_user_accounts_trial_status", table_name="user_accounts")
    op.drop_table("user_accounts")

    op.drop_index("ix_usage_user_occurred", table_name="usage_events")
    op.drop_index("ix_usage_period_type", table_name="usage_events")
    op.drop_table("usage_events")

    op.drop_index("uq_periods_user_live", table_name="subscription_periods")
    op.drop_index("ix_periods_status_end", table_name="subscription_periods")
    op.drop_index("ix_subscription_periods_user_id", table_name="subscription_periods")
    op.drop_table("subscription_periods")

    op.drop_index("ix_plans_is_active", table_name="plans")
    op.drop_table("plans")
