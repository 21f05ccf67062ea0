"""
Repository Layer for the Billing Engine

Exports all repository classes. Every repository is bound to the session of
the caller's unit of work.
"""

from billing_engine.infrastructure.db.repositories.base_repository import BaseRepository
from billing_engine.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from billing_engine.infrastructure.db.repositories.pricing_repository import PricingRepository
from billing_engine.infrastructure.db.repositories.invoice_repository import InvoiceRepository
from billing_engine.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
    RefundRepository,
)
from billing_engine.infrastructure.db.repositories.coupon_repository import CouponRepository


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "SubscriptionRepository",
    "PricingRepository",
    "InvoiceRepository",
    "PaymentRepository",
    "RefundRepository",
    "CouponRepository",
]
