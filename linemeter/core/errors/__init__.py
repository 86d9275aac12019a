"""
Error code system.

LineMeterError is the base exception for all structured errors.
Each domain error is a subclass pinned to a registry code; the error
middleware turns any of them into a structured JSON response.

Usage:
    from linemeter.core.errors import NoActiveSubscription
    raise NoActiveSubscription(detail="user_id=u_123", context={"user_id": "u_123"})
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^LM-[A-Z]{2,6}-\d{3}$")


class LineMeterError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "LM-USG-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    code: str = "LM-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or type(self).code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class _CodedError(LineMeterError):
    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(type(self).code, detail=detail, context=context)


class NoActiveSubscription(_CodedError):
    """The user has no ``active`` or ``trialing`` period, so nothing can be metered."""

    code = "LM-SUB-001"


class PeriodNotFound(_CodedError):
    code = "LM-SUB-002"


class SubscriptionAlreadyActive(_CodedError):
    code = "LM-SUB-003"


class InvalidUsageType(_CodedError):
    code = "LM-USG-001"


class InvalidQuantity(_CodedError):
    code = "LM-USG-002"


class AlreadyUsedTrial(_CodedError):
    code = "LM-TRL-001"


class PlanNotFound(_CodedError):
    code = "LM-PLN-001"


class PaymentGatewayError(_CodedError):
    """The payment processor rejected or failed a call."""

    code = "LM-PAY-001"


# Every concrete error the services raise; each must have a registry entry
ERROR_CLASSES = (
    NoActiveSubscription,
    PeriodNotFound,
    SubscriptionAlreadyActive,
    InvalidUsageType,
    InvalidQuantity,
    AlreadyUsedTrial,
    PlanNotFound,
    PaymentGatewayError,
)

__all__ = [
    "CODE_PATTERN",
    "ERROR_CLASSES",
    "LineMeterError",
    "NoActiveSubscription",
    "PeriodNotFound",
    "SubscriptionAlreadyActive",
    "InvalidUsageType",
    "InvalidQuantity",
    "AlreadyUsedTrial",
    "PlanNotFound",
    "PaymentGatewayError",
]
