"""
Unit tests for the Stripe gateway adapter.

Stripe SDK calls are patched; nothing leaves the process.
"""

import json
import time
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from billing_engine.domain.subscription import GatewayStatus
from billing_engine.infrastructure.exceptions import (
    ConfigurationError,
    GatewayTimeoutError,
    PaymentGatewayError,
)
from billing_engine.infrastructure.payments.gateway import (
    CheckoutRequest,
    StripeGateway,
    from_minor_units,
    to_minor_units,
)


def stub_settings(**overrides) -> SimpleNamespace:
    values = {
        "stripe_secret_key": "sk_test_123",
        "stripe_webhook_secret": "whsec_123",
        "payment_success_url": "https://app.test/success",
        "payment_cancel_url": "https://app.test/cancel",
        "gateway_timeout_seconds": 5.0,
        "gateway_max_network_retries": 0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_gateway(**overrides) -> StripeGateway:
    with patch(
        "billing_engine.infrastructure.payments.gateway.get_settings",
        return_value=stub_settings(**overrides),
    ):
        return StripeGateway()


REQUEST = CheckoutRequest(
    invoice_id=7,
    invoice_number="INV-20240601-000001",
    user_id=3,
    amount=Decimal("29.99"),
    currency="USD",
    description="Gold Monthly Plan",
)


class TestMinorUnits:
    def test_conversions(self):
        assert to_minor_units(Decimal("29.99")) == 2999
        assert to_minor_units(Decimal("0.005")) == 1
        assert from_minor_units(2999) == Decimal("29.99")
        assert from_minor_units(None) is None


class TestCheckout:
    async def test_initiate_creates_session_in_cents(self):
        gateway = make_gateway()
        created = SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/cs_1")

        with patch.object(stripe.checkout.Session, "create", return_value=created) as create:
            session = await gateway.initiate(REQUEST)

        assert session.session_key == "cs_1"
        assert session.redirect_url == "https://checkout.stripe.com/c/cs_1"
        kwargs = create.call_args.kwargs
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2999
        assert kwargs["line_items"][0]["price_data"]["currency"] == "usd"
        assert kwargs["metadata"]["invoice_id"] == "7"
        assert kwargs["success_url"] == "https://app.test/success?session_id={CHECKOUT_SESSION_ID}"

    @pytest.mark.parametrize(
        "payment_status, session_status, expected",
        [
            ("paid", "complete", GatewayStatus.VALID),
            ("unpaid", "open", GatewayStatus.PENDING),
            ("unpaid", "expired", GatewayStatus.INVALID),
        ],
    )
    async def test_validate_normalizes_status(self, payment_status, session_status, expected):
        gateway = make_gateway()
        retrieved = SimpleNamespace(
            id="cs_1",
            payment_status=payment_status,
            status=session_status,
            payment_intent="pi_1",
            amount_total=2999,
        )

        with patch.object(stripe.checkout.Session, "retrieve", return_value=retrieved):
            validation = await gateway.validate("cs_1")

        assert validation.status == expected
        assert validation.bank_transaction_id == "pi_1"
        assert validation.amount == Decimal("29.99")

    async def test_stripe_error_is_wrapped(self):
        gateway = make_gateway()

        with patch.object(stripe.checkout.Session, "create", side_effect=stripe.StripeError("card declined")):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await gateway.initiate(REQUEST)

        assert exc_info.value.details["operation"] == "initiate"
        assert not isinstance(exc_info.value, GatewayTimeoutError)

    async def test_slow_call_times_out(self):
        gateway = make_gateway(gateway_timeout_seconds=0.05)

        def slow(**kwargs):
            time.sleep(0.3)

        with patch.object(stripe.checkout.Session, "retrieve", side_effect=slow):
            with pytest.raises(GatewayTimeoutError):
                await gateway.validate("cs_1")

    async def test_unconfigured_key(self):
        gateway = make_gateway(stripe_secret_key=None)

        with pytest.raises(ConfigurationError):
            await gateway.validate("cs_1")


class TestRefund:
    @pytest.mark.parametrize(
        "stripe_status, expected",
        [("succeeded", GatewayStatus.VALID), ("pending", GatewayStatus.VALID), ("failed", GatewayStatus.FAILED)],
    )
    async def test_refund_status(self, stripe_status, expected):
        gateway = make_gateway()
        created = SimpleNamespace(id="re_1", status=stripe_status)

        with patch.object(stripe.Refund, "create", return_value=created) as create:
            result = await gateway.refund("pi_1", Decimal("10.00"), "Customer request")

        assert result.status == expected
        assert result.refund_reference == "re_1"
        assert create.call_args.kwargs["amount"] == 1000
        assert create.call_args.kwargs["payment_intent"] == "pi_1"


class TestWebhookSignature:
    PAYLOAD = json.dumps({"id": "evt_1", "type": "checkout.session.completed"}).encode()

    def test_valid_signature_returns_event(self):
        gateway = make_gateway()

        with patch.object(stripe.Webhook, "construct_event", MagicMock()):
            event = gateway.verify_webhook_signature(self.PAYLOAD, "t=1,v1=abc")

        assert event == {"id": "evt_1", "type": "checkout.session.completed"}

    def test_bad_signature(self):
        gateway = make_gateway()
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")

        with patch.object(stripe.Webhook, "construct_event", side_effect=error):
            with pytest.raises(PaymentGatewayError):
                gateway.verify_webhook_signature(self.PAYLOAD, "t=1,v1=abc")

    def test_missing_secret(self):
        gateway = make_gateway(stripe_webhook_secret=None)

        with pytest.raises(ConfigurationError):
            gateway.verify_webhook_signature(self.PAYLOAD, "t=1,v1=abc")
