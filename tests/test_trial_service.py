"""
Trial Service Tests
===================

start_free_trial(): one per user, exact 7-day window, live-period guard.
expire_trials(): inclusive boundary, period closure, per-user isolation.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import NOW
from linemeter.core.database import get_session_context
from linemeter.core.errors import (
    AlreadyUsedTrial,
    NoActiveSubscription,
    PlanNotFound,
    SubscriptionAlreadyActive,
)
from linemeter.models.billing import PeriodStatus, SubscriptionPeriod, TrialStatus, UserAccount
from linemeter.services.trial_service import TrialService


def _account(engine, user_id):
    with get_session_context(engine) as session:
        return session.get(UserAccount, user_id)


def _period(engine, period_id):
    with get_session_context(engine) as session:
        return session.get(SubscriptionPeriod, period_id)


class TestStartFreeTrial:
    def test_creates_trialing_period(self, trials, engine):
        period = trials.start_free_trial("u_new", now=NOW)

        assert period.status == PeriodStatus.TRIALING.value
        assert period.plan_id == "free"
        assert period.period_start == NOW
        assert period.trial_end == NOW + timedelta(days=7)
        assert period.period_end == NOW + timedelta(days=30)
        assert period.minutes_used == 0
        assert period.sms_used == 0

        account = _account(engine, "u_new")
        assert account.trial_status == TrialStatus.ACTIVE.value
        assert account.trial_started_at == NOW
        assert account.trial_ends_at == NOW + timedelta(days=7)
        assert account.subscription_tier == "free"

    def test_second_trial_rejected(self, trials):
        trials.start_free_trial("u_new", now=NOW)
        with pytest.raises(AlreadyUsedTrial):
            trials.start_free_trial("u_new", now=NOW + timedelta(days=1))

    def test_expired_trial_cannot_restart(self, trials):
        trials.start_free_trial("u_new", now=NOW)
        trials.expire_trials(NOW + timedelta(days=7))
        with pytest.raises(AlreadyUsedTrial):
            trials.start_free_trial("u_new", now=NOW + timedelta(days=8))

    def test_paid_user_cannot_start_trial(self, trials, make_period):
        make_period(user_id="u_paid")
        with pytest.raises(SubscriptionAlreadyActive):
            trials.start_free_trial("u_paid", now=NOW)

    def test_missing_free_plan(self, engine):
        service = TrialService(engine=engine, free_plan_id="does-not-exist")
        with pytest.raises(PlanNotFound):
            service.start_free_trial("u_new", now=NOW)
        # Nothing persisted, the user can still try once the plan exists
        assert _account(engine, "u_new") is None

    def test_trial_is_metered_against_trial_allowance(self, trials, metering):
        trials.start_free_trial("u_new", now=NOW)
        metering.record_usage("u_new", "call-minute", 12, timestamp=NOW)
        limits = metering.check_usage_limits("u_new", now=NOW)
        assert limits["is_trial"] is True
        assert limits["minutes_remaining"] == 38
        assert limits["days_remaining"] == 7


class TestExpireTrials:
    def test_boundary_inclusive(self, trials, engine):
        period = trials.start_free_trial("u_new", now=NOW)
        trial_end = NOW + timedelta(days=7)

        early = trials.expire_trials(trial_end - timedelta(microseconds=1))
        assert early.expired == []
        assert _account(engine, "u_new").trial_status == TrialStatus.ACTIVE.value

        summary = trials.expire_trials(trial_end)
        assert summary.expired == ["u_new"]

        account = _account(engine, "u_new")
        assert account.trial_status == TrialStatus.EXPIRED.value
        assert account.subscription_tier == "none"

        closed = _period(engine, period.id)
        assert closed.status == PeriodStatus.EXPIRED.value
        assert closed.cancelled_at == trial_end

    def test_expired_user_cannot_meter(self, trials, metering):
        trials.start_free_trial("u_new", now=NOW)
        trials.expire_trials(NOW + timedelta(days=8))
        with pytest.raises(NoActiveSubscription):
            metering.record_usage("u_new", "sms", 1, timestamp=NOW + timedelta(days=8))

    def test_rerun_is_noop(self, trials):
        trials.start_free_trial("u_new", now=NOW)
        trials.expire_trials(NOW + timedelta(days=8))
        assert trials.expire_trials(NOW + timedelta(days=8)).expired == []

    def test_one_failure_does_not_block_others(self, trials, engine):
        trials.start_free_trial("u_a", now=NOW)
        trials.start_free_trial("u_b", now=NOW)
        real = trials._expire_one

        def flaky(user_id, now):
            if user_id == "u_a":
                raise RuntimeError("boom")
            return real(user_id, now)

        with patch.object(trials, "_expire_one", side_effect=flaky):
            summary = trials.expire_trials(NOW + timedelta(days=7))

        assert summary.failed == ["u_a"]
        assert summary.expired == ["u_b"]
        assert _account(engine, "u_a").trial_status == TrialStatus.ACTIVE.value
