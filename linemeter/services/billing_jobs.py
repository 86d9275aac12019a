"""
Billing jobs: the scheduled entry points.

run_billing_cycle rolls elapsed periods and turns closed-period overage into
invoice items at the payment processor. run_trial_expiry closes trials whose
window has ended. Both are single-flight: the scheduler guarantees that no
two runs of the same job overlap.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from linemeter.core.database import get_session_context
from linemeter.core.structured_logging import job_name_var
from linemeter.models.billing import UserAccount
from linemeter.services.billing_cycle import (
    BillingCycleReconciler,
    ClosedPeriod,
    billing_cycle_reconciler,
)
from linemeter.services.payment_gateway import PaymentGateway
from linemeter.services.trial_service import TrialService, trial_service
from linemeter.utils.dates import to_utc

logger = logging.getLogger(__name__)


def overage_description(closed: ClosedPeriod) -> str:
    overage = closed.overage
    minutes = f"{overage.minutes_overage:g}"
    return f"Usage overage: {minutes} minutes, {overage.sms_overage} SMS"


def _invoice_key(closed: ClosedPeriod) -> str:
    return f"overage-{closed.period_id}-{closed.period_end.strftime('%Y%m%d%H%M%S')}"


def run_billing_cycle(
    now: Optional[datetime] = None,
    reconciler: Optional[BillingCycleReconciler] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Dict[str, Any]:
    """Roll elapsed periods and invoice any overage. Returns a summary dict."""
    reconciler = reconciler or billing_cycle_reconciler
    if gateway is None:
        from linemeter.services.subscription_service import subscription_service
        gateway = subscription_service.gateway

    token = job_name_var.set("billing_cycle")
    try:
        now = to_utc(now)
        summary = reconciler.reset_elapsed_periods(now)

        invoiced = 0
        no_customer = 0
        invoice_failures = []
        for closed in summary.closed:
            if closed.overage is None or not closed.overage.is_billable:
                continue

            with get_session_context(reconciler.engine) as session:
                account = session.get(UserAccount, closed.user_id)
                customer_id = account.stripe_customer_id if account is not None else None

            if not customer_id:
                no_customer += 1
                logger.warning(
                    "Overage of %s %s for user %s not invoiced: no payment customer",
                    closed.overage.total_charge, closed.overage.currency, closed.user_id,
                )
                continue

            try:
                gateway.create_invoice_item(
                    customer_id,
                    closed.overage.amount_cents,
                    closed.overage.currency,
                    overage_description(closed),
                    idempotency_key=_invoice_key(closed),
                )
            except Exception as exc:
                invoice_failures.append(closed.period_id)
                logger.error(
                    "Failed to invoice overage for period %s: %s",
                    closed.period_id, exc, exc_info=True,
                )
                continue
            invoiced += 1

        result = {
            "job": "billing_cycle",
            "now": now.isoformat(),
            "periods_rolled": len(summary.rolled_period_ids),
            "cycles_closed": len(summary.closed),
            "periods_skipped": len(summary.skipped),
            "periods_failed": summary.failed,
            "invoices_created": invoiced,
            "invoices_skipped_no_customer": no_customer,
            "invoice_failures": invoice_failures,
        }
        logger.info("Billing cycle job complete: %s", result)
        return result
    finally:
        job_name_var.reset(token)


def run_trial_expiry(
    now: Optional[datetime] = None,
    service: Optional[TrialService] = None,
) -> Dict[str, Any]:
    service = service or trial_service
    token = job_name_var.set("trial_expiry")
    try:
        summary = service.expire_trials(to_utc(now))
        result = {"job": "trial_expiry", **summary.to_dict()}
        logger.info("Trial expiry job complete: %s", result)
        return result
    finally:
        job_name_var.reset(token)
