"""
Billing Cycle Reconciler Tests
==============================

Coverage:
  - Rollover window and counter reset
  - Idempotency for the same ``now``
  - End-of-month clamping (Jan 31 → Feb 28 / Feb 29)
  - Missed cycles caught up in one pass, one closed cycle per month
  - Non-active and not-yet-due periods untouched
  - Overage pricing (exact allowance, 10 extra minutes at 0.02)
  - A failing period does not stop the batch
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import NOW, UTC
from linemeter.core.database import get_session_context
from linemeter.core.errors import PeriodNotFound
from linemeter.models.billing import PeriodStatus, Plan, SubscriptionPeriod
from linemeter.services.billing_cycle import (
    BillingCycleReconciler,
    calculate_overage,
    closed_cycles,
    next_period_bounds,
)


def _period(engine, period_id):
    with get_session_context(engine) as session:
        return session.get(SubscriptionPeriod, period_id)


def _plan(**overrides):
    values = dict(
        id="t", name="t", display_name="T", included_minutes=100, included_sms=100,
        price_per_extra_minute=Decimal("0.02"), price_per_extra_sms=Decimal("0.01"),
    )
    values.update(overrides)
    return Plan(**values)


class TestResetElapsedPeriods:
    def test_rolls_and_resets(self, reconciler, make_period, engine):
        start = datetime(2026, 2, 1, tzinfo=UTC)
        period = make_period(start=start, end=datetime(2026, 3, 1, tzinfo=UTC), minutes_used=120.5, sms_used=30)

        summary = reconciler.reset_elapsed_periods(datetime(2026, 3, 1, 0, 0, 1, tzinfo=UTC))

        assert len(summary.closed) == 1
        closed = summary.closed[0]
        assert closed.period_id == period.id
        assert closed.period_start == start
        assert closed.period_end == datetime(2026, 3, 1, tzinfo=UTC)
        assert closed.minutes_used == 120.5
        assert closed.sms_used == 30

        rolled = _period(engine, period.id)
        assert rolled.period_start == datetime(2026, 3, 1, tzinfo=UTC)
        assert rolled.period_end == datetime(2026, 4, 1, tzinfo=UTC)
        assert rolled.next_billing_date == datetime(2026, 4, 1, tzinfo=UTC)
        assert rolled.minutes_used == 0
        assert rolled.sms_used == 0
        assert rolled.status == PeriodStatus.ACTIVE.value

    def test_boundary_is_inclusive(self, reconciler, make_period):
        make_period(start=datetime(2026, 2, 1, tzinfo=UTC), end=datetime(2026, 3, 1, tzinfo=UTC))
        assert len(reconciler.reset_elapsed_periods(datetime(2026, 3, 1, tzinfo=UTC)).closed) == 1

    def test_not_due_untouched(self, reconciler, make_period, engine):
        period = make_period(start=datetime(2026, 2, 1, tzinfo=UTC), end=datetime(2026, 3, 1, tzinfo=UTC), minutes_used=5.0)
        summary = reconciler.reset_elapsed_periods(datetime(2026, 2, 28, 23, 59, 59, tzinfo=UTC))
        assert summary.closed == []
        assert _period(engine, period.id).minutes_used == 5.0

    def test_idempotent_for_same_now(self, reconciler, make_period, engine):
        period = make_period(start=datetime(2026, 2, 1, tzinfo=UTC), end=datetime(2026, 3, 1, tzinfo=UTC), minutes_used=10.0)
        now = datetime(2026, 3, 2, tzinfo=UTC)

        first = reconciler.reset_elapsed_periods(now)
        after_first = _period(engine, period.id)
        second = reconciler.reset_elapsed_periods(now)
        after_second = _period(engine, period.id)

        assert len(first.closed) == 1
        assert second.closed == []
        assert after_second.period_start == after_first.period_start
        assert after_second.period_end == after_first.period_end

    @pytest.mark.parametrize("year,feb_end", [(2027, 28), (2028, 29)])
    def test_jan_31_rolls_to_end_of_february(self, reconciler, make_period, engine, year, feb_end):
        period = make_period(
            start=datetime(year - 1, 12, 31, tzinfo=UTC), end=datetime(year, 1, 31, tzinfo=UTC),
        )
        reconciler.reset_elapsed_periods(datetime(year, 1, 31, 0, 0, 1, tzinfo=UTC))
        rolled = _period(engine, period.id)
        assert rolled.period_start == datetime(year, 1, 31, tzinfo=UTC)
        assert rolled.period_end == datetime(year, 2, feb_end, tzinfo=UTC)

    def test_missed_cycles_caught_up(self, reconciler, make_period, engine):
        period = make_period(start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC), minutes_used=8.0)
        summary = reconciler.reset_elapsed_periods(datetime(2026, 4, 15, tzinfo=UTC))
        rolled = _period(engine, period.id)
        assert [c.period_end.month for c in summary.closed] == [2, 3, 4]
        assert [c.minutes_used for c in summary.closed] == [8.0, 0.0, 0.0]
        assert summary.rolled_period_ids == [period.id]
        assert rolled.period_start == datetime(2026, 4, 1, tzinfo=UTC)
        assert rolled.period_end == datetime(2026, 5, 1, tzinfo=UTC)

    def test_only_active_periods_roll(self, reconciler, make_period):
        make_period(user_id="u_trial", status=PeriodStatus.TRIALING.value,
                    start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC))
        make_period(user_id="u_cancel", status=PeriodStatus.CANCELLED.value,
                    start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC))
        assert reconciler.reset_elapsed_periods(datetime(2026, 3, 1, tzinfo=UTC)).closed == []

    def test_overage_attached_to_closed_period(self, reconciler, make_period):
        make_period(start=datetime(2026, 2, 1, tzinfo=UTC), end=datetime(2026, 3, 1, tzinfo=UTC), minutes_used=110.0, sms_used=100)
        closed = reconciler.reset_elapsed_periods(datetime(2026, 3, 1, tzinfo=UTC)).closed[0]
        assert closed.overage.total_charge == Decimal("0.20")
        assert closed.overage.amount_cents == 20

    def test_failure_does_not_stop_batch(self, engine, make_period):
        bad = make_period(user_id="u_bad", start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC))
        good = make_period(user_id="u_good", start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC))
        reconciler = BillingCycleReconciler(engine=engine)
        real_roll = reconciler._roll_period

        def flaky(period_id, now):
            if period_id == bad.id:
                raise RuntimeError("boom")
            return real_roll(period_id, now)

        with patch.object(reconciler, "_roll_period", side_effect=flaky):
            summary = reconciler.reset_elapsed_periods(datetime(2026, 2, 2, tzinfo=UTC))

        assert summary.failed == [bad.id]
        assert [c.period_id for c in summary.closed] == [good.id]
        assert _period(engine, bad.id).period_end == datetime(2026, 2, 1, tzinfo=UTC)


class TestMissedCycleOverage:
    """Each elapsed month is closed and priced against its own allowance."""

    def test_usage_spread_over_months_is_not_overage(self, reconciler, metering, make_period, engine):
        period = make_period(start=datetime(2025, 11, 1, tzinfo=UTC), end=datetime(2025, 12, 1, tzinfo=UTC))
        for occurred, minutes in [
            (datetime(2025, 11, 15, tzinfo=UTC), 60),
            (datetime(2025, 12, 15, tzinfo=UTC), 60),
            (datetime(2026, 1, 15, tzinfo=UTC), 70),
            (datetime(2026, 2, 15, tzinfo=UTC), 60),
        ]:
            metering.record_usage("u_1", "call-minute", minutes, timestamp=occurred)

        summary = reconciler.reset_elapsed_periods(datetime(2026, 3, 2, tzinfo=UTC))

        assert [(c.period_start.month, c.period_end.month) for c in summary.closed] == [
            (11, 12), (12, 1), (1, 2), (2, 3),
        ]
        assert [c.minutes_used for c in summary.closed] == [60.0, 60.0, 70.0, 60.0]
        assert not any(c.overage.is_billable for c in summary.closed)

        rolled = _period(engine, period.id)
        assert rolled.minutes_used == 0
        assert rolled.period_start == datetime(2026, 3, 1, tzinfo=UTC)

    def test_only_the_month_over_allowance_is_charged(self, reconciler, metering, make_period):
        make_period(start=datetime(2025, 12, 1, tzinfo=UTC), end=datetime(2026, 1, 1, tzinfo=UTC))
        metering.record_usage("u_1", "call-minute", 50, timestamp=datetime(2025, 12, 10, tzinfo=UTC))
        metering.record_usage("u_1", "call-minute", 130, timestamp=datetime(2026, 1, 10, tzinfo=UTC))
        metering.record_usage("u_1", "sms", 20, timestamp=datetime(2026, 2, 10, tzinfo=UTC))

        closed = reconciler.reset_elapsed_periods(datetime(2026, 3, 1, tzinfo=UTC)).closed

        assert [c.overage.total_charge for c in closed] == [Decimal("0"), Decimal("0.60"), Decimal("0")]
        assert closed[1].overage.minutes_overage == 30
        assert closed[2].sms_used == 20

    def test_counter_usage_without_ledger_stays_in_first_month(self, reconciler, metering, make_period):
        make_period(
            start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC), minutes_used=40.0,
        )
        metering.record_usage("u_1", "call-minute", 50, timestamp=datetime(2026, 2, 20, tzinfo=UTC))

        closed = reconciler.reset_elapsed_periods(datetime(2026, 3, 1, tzinfo=UTC)).closed

        assert [c.minutes_used for c in closed] == [40.0, 50.0]
        assert sum(c.minutes_used for c in closed) == 90.0


class TestClosedCycles:
    def test_single_cycle(self):
        start, end = datetime(2026, 2, 1, tzinfo=UTC), datetime(2026, 3, 1, tzinfo=UTC)
        assert closed_cycles(start, end, datetime(2026, 3, 5, tzinfo=UTC)) == [(start, end)]

    def test_clamped_months(self):
        cycles = closed_cycles(
            datetime(2026, 12, 31, tzinfo=UTC), datetime(2027, 1, 31, tzinfo=UTC),
            datetime(2027, 3, 30, tzinfo=UTC),
        )
        assert [end.date().isoformat() for _, end in cycles] == ["2027-01-31", "2027-02-28", "2027-03-28"]


class TestOverage:
    def test_exact_allowance_is_zero(self):
        charge = calculate_overage(_plan(), 100, 100)
        assert charge.total_charge == 0
        assert not charge.is_billable

    def test_ten_extra_minutes(self):
        charge = calculate_overage(_plan(), 110, 0)
        assert charge.minutes_overage == 10
        assert charge.minutes_charge == Decimal("0.20")
        assert charge.total_charge == Decimal("0.20")

    def test_sms_and_minutes_summed(self):
        charge = calculate_overage(_plan(), 112.5, 105)
        assert charge.sms_overage == 5
        assert charge.total_charge == Decimal("0.25") + Decimal("0.05")
        assert charge.amount_cents == 30

    def test_fractional_minutes_trimmed(self):
        charge = calculate_overage(_plan(included_minutes=0), 0.1 + 0.2, 0)
        assert charge.minutes_overage == 0.3

    def test_compute_overage_from_counters(self, reconciler, make_period):
        period = make_period(minutes_used=110.0)
        assert reconciler.compute_overage(period.id).total_charge == Decimal("0.20")

    def test_compute_overage_unknown_period(self, reconciler):
        with pytest.raises(PeriodNotFound):
            reconciler.compute_overage(999)

    def test_to_dict_serialises_money_as_strings(self):
        data = calculate_overage(_plan(), 110, 0).to_dict()
        assert Decimal(data["total_charge"]) == Decimal("0.20")
        assert data["currency"] == "usd"


class TestNextPeriodBounds:
    def test_single_step(self):
        assert next_period_bounds(datetime(2026, 3, 1, tzinfo=UTC), datetime(2026, 3, 2, tzinfo=UTC)) == (
            datetime(2026, 3, 1, tzinfo=UTC), datetime(2026, 4, 1, tzinfo=UTC),
        )

    def test_end_strictly_after_now(self):
        start, end = next_period_bounds(datetime(2026, 3, 1, tzinfo=UTC), datetime(2026, 4, 1, tzinfo=UTC))
        assert end > datetime(2026, 4, 1, tzinfo=UTC)
        assert start == datetime(2026, 4, 1, tzinfo=UTC)

    def test_now_reference(self):
        start, end = next_period_bounds(NOW - timedelta(days=1), NOW)
        assert start < NOW < end
