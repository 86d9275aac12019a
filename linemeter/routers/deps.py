"""Service providers for route handlers. Tests override these via app.dependency_overrides."""

from linemeter.services.metering_service import MeteringService, metering_service
from linemeter.services.plan_catalog import PlanCatalog, plan_catalog
from linemeter.services.trial_service import TrialService, trial_service
from linemeter.services.usage_ledger import UsageLedger, usage_ledger


def get_metering_service() -> MeteringService:
    return metering_service


def get_usage_ledger() -> UsageLedger:
    return usage_ledger


def get_plan_catalog() -> PlanCatalog:
    return plan_catalog


def get_trial_service() -> TrialService:
    return trial_service


def get_subscription_service():
    from linemeter.services.subscription_service import subscription_service
    return subscription_service
