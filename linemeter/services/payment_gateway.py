"""
Payment Gateway: the payment-processor capability injected into billing flows
===========================================================================

Business logic never branches on environment variables to skip the payment
processor. Instead a gateway is chosen once, at construction time:

    - **StripeGateway**: real Stripe customers, subscriptions, invoice items.
    - **NullGateway**: records calls and returns synthetic ids. Used in
      tests and in deployments without a Stripe key.

CONFIGURATION (env vars with LINEMETER_ prefix):
    LINEMETER_STRIPE_SECRET_KEY   : Stripe secret API key
    LINEMETER_STRIPE_API_VERSION  : optional pinned API version
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import stripe

from linemeter.config import Settings, settings as default_settings
from linemeter.core.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

__all__ = [
    "PaymentGateway",
    "StripeGateway",
    "NullGateway",
    "GatewaySubscription",
    "build_payment_gateway",
]


@dataclass(frozen=True)
class GatewaySubscription:
    subscription_id: str
    status: str


class PaymentGateway(Protocol):
    def ensure_customer(
        self, user_id: str, email: Optional[str], customer_id: Optional[str] = None,
    ) -> str: ...

    def create_subscription(
        self, customer_id: str, price_id: Optional[str], payment_method_id: Optional[str] = None,
    ) -> GatewaySubscription: ...

    def cancel_subscription(self, subscription_id: str) -> None: ...

    def create_invoice_item(
        self, customer_id: str, amount_cents: int, currency: str, description: str,
        idempotency_key: Optional[str] = None,
    ) -> str: ...


class StripeGateway:
    """Stripe-backed gateway. Every SDK error is wrapped in PaymentGatewayError."""

    def __init__(self, api_key: str, api_version: Optional[str] = None) -> None:
        stripe.api_key = api_key
        if api_version:
            stripe.api_version = api_version

    def ensure_customer(
        self, user_id: str, email: Optional[str], customer_id: Optional[str] = None,
    ) -> str:
        if customer_id:
            return customer_id
        customer_params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            customer_params["email"] = email
        try:
            customer = stripe.Customer.create(**customer_params)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(
                detail=f"customer create failed: {exc}", context={"user_id": user_id},
            ) from exc
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    def create_subscription(
        self, customer_id: str, price_id: Optional[str], payment_method_id: Optional[str] = None,
    ) -> GatewaySubscription:
        if not price_id:
            raise PaymentGatewayError(
                detail="plan has no Stripe price id", context={"customer_id": customer_id},
            )
        try:
            if payment_method_id:
                stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
                stripe.Customer.modify(
                    customer_id,
                    invoice_settings={"default_payment_method": payment_method_id},
                )
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(
                detail=f"subscription create failed: {exc}",
                context={"customer_id": customer_id, "price_id": price_id},
            ) from exc
        logger.info("Created Stripe subscription %s for customer %s", subscription.id, customer_id)
        return GatewaySubscription(subscription_id=subscription.id, status=subscription.status)

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(
                detail=f"subscription cancel failed: {exc}",
                context={"subscription_id": subscription_id},
            ) from exc
        logger.info("Stripe subscription %s set to cancel at period end", subscription_id)

    def create_invoice_item(
        self, customer_id: str, amount_cents: int, currency: str, description: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "amount": amount_cents,
            "currency": currency,
            "description": description,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            item = stripe.InvoiceItem.create(**params)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(
                detail=f"invoice item create failed: {exc}",
                context={"customer_id": customer_id, "amount_cents": amount_cents},
            ) from exc
        return item.id


@dataclass
class NullGateway:
    """No-op gateway that records every call."""

    calls: List[Dict[str, Any]] = field(default_factory=list)

    def _record(self, op: str, **kwargs: Any) -> int:
        self.calls.append({"op": op, **kwargs})
        return len(self.calls)

    def ensure_customer(
        self, user_id: str, email: Optional[str], customer_id: Optional[str] = None,
    ) -> str:
        if customer_id:
            return customer_id
        n = self._record("ensure_customer", user_id=user_id, email=email)
        return f"cus_null_{n}"

    def create_subscription(
        self, customer_id: str, price_id: Optional[str], payment_method_id: Optional[str] = None,
    ) -> GatewaySubscription:
        n = self._record(
            "create_subscription",
            customer_id=customer_id, price_id=price_id, payment_method_id=payment_method_id,
        )
        return GatewaySubscription(subscription_id=f"sub_null_{n}", status="active")

    def cancel_subscription(self, subscription_id: str) -> None:
        self._record("cancel_subscription", subscription_id=subscription_id)

    def create_invoice_item(
        self, customer_id: str, amount_cents: int, currency: str, description: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        n = self._record(
            "create_invoice_item",
            customer_id=customer_id, amount_cents=amount_cents,
            currency=currency, description=description, idempotency_key=idempotency_key,
        )
        return f"ii_null_{n}"


def build_payment_gateway(config: Optional[Settings] = None) -> PaymentGateway:
    config = config or default_settings
    if config.stripe_secret_key:
        return StripeGateway(config.stripe_secret_key, api_version=config.stripe_api_version)
    logger.warning(
        "LINEMETER_STRIPE_SECRET_KEY not set, using NullGateway. "
        "Subscriptions and overage invoices will not reach a payment processor."
    )
    return NullGateway()
