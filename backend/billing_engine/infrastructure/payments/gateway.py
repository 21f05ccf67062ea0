"""
Payment Gateway

The engine talks to the gateway only through three calls:
initiate (start a hosted checkout), validate (confirm a transaction) and
refund. The Stripe implementation uses hosted Checkout in one-off
``payment`` mode: the engine owns invoices, renewals and retries itself.

Every call runs off the event loop with a timeout, and is never made while a
database unit of work is open.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

import stripe
from stripe import StripeError

from billing_engine.config.settings import get_settings
from billing_engine.domain.money import quantize_money
from billing_engine.domain.subscription import GatewayStatus
from billing_engine.infrastructure.exceptions import (
    ConfigurationError,
    GatewayTimeoutError,
    PaymentGatewayError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CheckoutRequest:
    """What the gateway needs to start a checkout for an invoice."""
    invoice_id: int
    invoice_number: str
    user_id: int
    amount: Decimal
    currency: str
    description: str
    payment_method: str = "card"


@dataclass(frozen=True)
class GatewaySession:
    """A started checkout: the key we store and where to send the customer."""
    session_key: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayValidation:
    """Outcome of validating a transaction with the gateway."""
    status: GatewayStatus
    bank_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayRefund:
    """Outcome of a refund call."""
    status: GatewayStatus
    refund_reference: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Opaque payment gateway contract."""

    @abstractmethod
    async def initiate(self, request: CheckoutRequest) -> GatewaySession:
        """Start a checkout; raises PaymentGatewayError on failure."""

    @abstractmethod
    async def validate(self, transaction_ref: str) -> GatewayValidation:
        """Confirm a transaction; raises PaymentGatewayError on failure."""

    @abstractmethod
    async def refund(self, bank_transaction_id: str, amount: Decimal, remarks: str) -> GatewayRefund:
        """Refund ``amount`` of a captured transaction."""

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict:
        """Authenticate a gateway callback and return the parsed event."""
        raise ConfigurationError(f"{self.__class__.__name__} does not accept webhooks")


def to_minor_units(amount: Decimal) -> int:
    """Decimal amount to integer cents."""
    return int(quantize_money(amount) * 100)


def from_minor_units(amount: Optional[int]) -> Optional[Decimal]:
    if amount is None:
        return None
    return quantize_money(Decimal(amount) / 100)


class StripeGateway(PaymentGateway):
    """
    Stripe Checkout gateway.

    All methods are stateless; Stripe's SDK is synchronous so calls are
    pushed to a worker thread and bounded by ``gateway_timeout_seconds``.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._success_url = settings.payment_success_url
        self._cancel_url = settings.payment_cancel_url
        self._timeout = timeout_seconds or settings.gateway_timeout_seconds

        if self._api_key:
            stripe.api_key = self._api_key
        stripe.max_network_retries = settings.gateway_max_network_retries

    async def _call(self, operation: str, func: Callable[..., T], **kwargs) -> T:
        """Run a blocking Stripe call with a timeout, mapping its errors."""
        if not self._api_key:
            raise ConfigurationError(
                "Stripe is not configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise GatewayTimeoutError(
                f"Gateway {operation} timed out",
                operation=operation,
                original_error=e,
            )
        except StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise PaymentGatewayError(
                f"Gateway {operation} failed: {e.user_message or e}",
                operation=operation,
                original_error=e,
            )

    # =========================================================================
    # Checkout
    # =========================================================================

    async def initiate(self, request: CheckoutRequest) -> GatewaySession:
        """
        Create a hosted Checkout session for one invoice.

        Args:
            request: Invoice amount, currency and references

        Returns:
            GatewaySession with the Checkout session id and URL
        """
        session = await self._call(
            "initiate",
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=[request.payment_method],
            line_items=[
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "unit_amount": to_minor_units(request.amount),
                        "product_data": {"name": request.description},
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{self._success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=self._cancel_url,
            client_reference_id=str(request.user_id),
            metadata={
                "invoice_id": str(request.invoice_id),
                "invoice_number": request.invoice_number,
                "user_id": str(request.user_id),
            },
            idempotency_key=f"checkout-{request.invoice_number}-{request.user_id}",
        )

        logger.info(
            f"Created checkout session {session.id} for invoice {request.invoice_number}, "
            f"amount={request.amount} {request.currency}"
        )
        return GatewaySession(session_key=session.id, redirect_url=session.url)

    async def validate(self, transaction_ref: str) -> GatewayValidation:
        """
        Retrieve a Checkout session and normalize its payment status.

        Returns:
            VALID when paid, PENDING when still open, INVALID otherwise
        """
        session = await self._call("validate", stripe.checkout.Session.retrieve, id=transaction_ref)

        if session.payment_status == "paid":
            status = GatewayStatus.VALID
        elif session.status == "open":
            status = GatewayStatus.PENDING
        else:
            status = GatewayStatus.INVALID

        return GatewayValidation(
            status=status,
            bank_transaction_id=session.payment_intent,
            amount=from_minor_units(session.amount_total),
            raw={
                "session_id": session.id,
                "payment_status": session.payment_status,
                "status": session.status,
            },
        )

    async def refund(self, bank_transaction_id: str, amount: Decimal, remarks: str) -> GatewayRefund:
        """Refund part or all of a captured PaymentIntent."""
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=bank_transaction_id,
            amount=to_minor_units(amount),
            metadata={"remarks": remarks[:500]},
        )

        status = GatewayStatus.VALID if refund.status in ("succeeded", "pending") else GatewayStatus.FAILED
        logger.info(f"Refund {refund.id} for {bank_transaction_id}: {refund.status}")
        return GatewayRefund(
            status=status,
            refund_reference=refund.id,
            raw={"refund_id": refund.id, "status": refund.status},
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> dict:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            The parsed event payload once the signature checks out

        Raises:
            PaymentGatewayError if signature invalid
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )
        except ValueError as e:
            raise PaymentGatewayError(f"Invalid payload: {e}", operation="webhook")
        except stripe.SignatureVerificationError as e:
            raise PaymentGatewayError(f"Invalid signature: {e}", operation="webhook")

        return json.loads(payload)


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_gateway_instance: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Get or create the payment gateway singleton."""
    global _gateway_instance

    if _gateway_instance is None:
        _gateway_instance = StripeGateway()

    return _gateway_instance


def set_payment_gateway(gateway: Optional[PaymentGateway]) -> None:
    """Swap the gateway (tests, alternative providers)."""
    global _gateway_instance
    _gateway_instance = gateway
