"""
SQLModel ORM Models for the Billing Engine

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from billing_engine.infrastructure.db.models.base import (
    BaseModel,
    IntIdMixin,
    JSONType,
    TimestampMixin,
    UTCDateTime,
    utc_now,
)
from billing_engine.infrastructure.db.models.subscription import (
    Subscription,
    SubscriptionPrice,
)
from billing_engine.infrastructure.db.models.invoice import Invoice, InvoiceItem
from billing_engine.infrastructure.db.models.payment import Payment, Refund
from billing_engine.infrastructure.db.models.coupon import Coupon
from billing_engine.infrastructure.db.models.webhook_event import ProcessedWebhookEvent


__all__ = [
    # Base
    "BaseModel",
    "IntIdMixin",
    "JSONType",
    "TimestampMixin",
    "UTCDateTime",
    "utc_now",
    # Billing
    "Subscription",
    "SubscriptionPrice",
    "Invoice",
    "InvoiceItem",
    "Payment",
    "Refund",
    "Coupon",
    "ProcessedWebhookEvent",
]
