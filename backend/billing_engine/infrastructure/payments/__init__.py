"""
Payments Infrastructure Module

Payment gateway contract and its Stripe Checkout implementation.
"""

from billing_engine.infrastructure.payments.gateway import (
    CheckoutRequest,
    GatewayRefund,
    GatewaySession,
    GatewayValidation,
    PaymentGateway,
    StripeGateway,
    get_payment_gateway,
    set_payment_gateway,
)

__all__ = [
    "CheckoutRequest",
    "GatewayRefund",
    "GatewaySession",
    "GatewayValidation",
    "PaymentGateway",
    "StripeGateway",
    "get_payment_gateway",
    "set_payment_gateway",
]
