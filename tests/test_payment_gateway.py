"""
Payment Gateway Tests
=====================

StripeGateway with the Stripe SDK mocked (no network), NullGateway
recording, and gateway selection from settings.
"""

from unittest.mock import MagicMock, patch

import pytest
import stripe

from linemeter.config import Settings
from linemeter.core.errors import PaymentGatewayError
from linemeter.services.payment_gateway import (
    NullGateway,
    StripeGateway,
    build_payment_gateway,
)


@pytest.fixture
def gw():
    return StripeGateway("sk_test_123")


class TestStripeGateway:
    def test_sets_api_key(self, gw):
        assert stripe.api_key == "sk_test_123"

    def test_ensure_customer_creates(self, gw):
        with patch.object(stripe.Customer, "create", return_value=MagicMock(id="cus_abc")) as create:
            assert gw.ensure_customer("u_1", "a@example.com") == "cus_abc"
        create.assert_called_once_with(metadata={"user_id": "u_1"}, email="a@example.com")

    def test_ensure_customer_reuses_existing(self, gw):
        with patch.object(stripe.Customer, "create") as create:
            assert gw.ensure_customer("u_1", None, customer_id="cus_known") == "cus_known"
        create.assert_not_called()

    def test_create_subscription(self, gw):
        sub = MagicMock(id="sub_1", status="active")
        with patch.object(stripe.Subscription, "create", return_value=sub) as create, \
                patch.object(stripe.PaymentMethod, "attach") as attach, \
                patch.object(stripe.Customer, "modify") as modify:
            result = gw.create_subscription("cus_abc", "price_starter", payment_method_id="pm_1")

        assert result.subscription_id == "sub_1"
        assert result.status == "active"
        attach.assert_called_once_with("pm_1", customer="cus_abc")
        modify.assert_called_once_with(
            "cus_abc", invoice_settings={"default_payment_method": "pm_1"},
        )
        create.assert_called_once_with(customer="cus_abc", items=[{"price": "price_starter"}])

    def test_create_subscription_requires_price(self, gw):
        with pytest.raises(PaymentGatewayError):
            gw.create_subscription("cus_abc", None)

    def test_stripe_error_wrapped(self, gw):
        with patch.object(stripe.Subscription, "create", side_effect=stripe.StripeError("declined")):
            with pytest.raises(PaymentGatewayError) as excinfo:
                gw.create_subscription("cus_abc", "price_starter")
        assert excinfo.value.code == "LM-PAY-001"
        assert isinstance(excinfo.value.__cause__, stripe.StripeError)

    def test_cancel_at_period_end(self, gw):
        with patch.object(stripe.Subscription, "modify") as modify:
            gw.cancel_subscription("sub_1")
        modify.assert_called_once_with("sub_1", cancel_at_period_end=True)

    def test_invoice_item(self, gw):
        with patch.object(stripe.InvoiceItem, "create", return_value=MagicMock(id="ii_1")) as create:
            item_id = gw.create_invoice_item(
                "cus_abc", 20, "usd", "Usage overage: 10 minutes, 0 SMS", idempotency_key="k1",
            )
        assert item_id == "ii_1"
        create.assert_called_once_with(
            customer="cus_abc",
            amount=20,
            currency="usd",
            description="Usage overage: 10 minutes, 0 SMS",
            idempotency_key="k1",
        )


class TestNullGateway:
    def test_records_calls(self):
        gw = NullGateway()
        customer = gw.ensure_customer("u_1", None)
        sub = gw.create_subscription(customer, "price_x")
        gw.cancel_subscription(sub.subscription_id)
        gw.create_invoice_item(customer, 150, "usd", "desc")

        assert [c["op"] for c in gw.calls] == [
            "ensure_customer", "create_subscription", "cancel_subscription", "create_invoice_item",
        ]
        assert gw.calls[-1]["amount_cents"] == 150


class TestBuildPaymentGateway:
    def test_null_without_key(self):
        assert isinstance(build_payment_gateway(Settings(stripe_secret_key=None)), NullGateway)

    def test_stripe_with_key(self):
        assert isinstance(build_payment_gateway(Settings(stripe_secret_key="sk_test_x")), StripeGateway)
