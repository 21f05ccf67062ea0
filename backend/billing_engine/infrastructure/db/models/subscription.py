"""
Subscription Database Models

SQLModel tables for subscriptions and the price catalogue.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field

from billing_engine.domain.money import ZERO
from billing_engine.infrastructure.db.models.base import BaseModel, UTCDateTime


class Subscription(BaseModel, table=True):
    """
    Subscription table.

    ``expiry_processed``, ``renewal_in_progress``, ``last_renewal_attempt``
    and ``reminder_sent_at`` are the scan leases; nothing else coordinates
    concurrent scheduler ticks.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one PENDING/ACTIVE subscription per user
        Index(
            "uq_subscriptions_user_open",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'ACTIVE')"),
            sqlite_where=text("status IN ('PENDING', 'ACTIVE')"),
        ),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
    )

    user_id: int = Field(index=True, nullable=False)

    tier: str = Field(max_length=20)
    billing_cycle: str = Field(max_length=20)
    status: str = Field(default="PENDING", max_length=20, index=True)
    currency: str = Field(default="USD", max_length=3)
    region: str = Field(default="GLOBAL", max_length=20)

    # Billing period
    start_date: datetime = Field(sa_type=UTCDateTime, nullable=False)
    end_date: datetime = Field(sa_type=UTCDateTime, nullable=False)
    trial_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, index=True)
    auto_renew: bool = Field(default=True)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Proration credit waiting for the next invoice
    credit_balance: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)

    # Scan leases
    expiry_processed: bool = Field(default=False)
    renewal_in_progress: bool = Field(default=False)
    last_renewal_attempt: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    reminder_sent_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class SubscriptionPrice(BaseModel, table=True):
    """
    Price catalogue row keyed by (tier, billing_cycle, currency, region).

    Read-only for the engine. Region is never NULL ("GLOBAL" is the default
    market) so the partial unique index covers every key.
    """

    __tablename__ = "subscription_prices"
    __table_args__ = (
        Index(
            "uq_subscription_prices_active_key",
            "tier",
            "billing_cycle",
            "currency",
            "region",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active"),
        ),
    )

    tier: str = Field(max_length=20)
    billing_cycle: str = Field(max_length=20)
    currency: str = Field(default="USD", max_length=3)
    region: str = Field(default="GLOBAL", max_length=20)

    price: Decimal = Field(max_digits=12, decimal_places=2)
    setup_fee: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    tax_rate: Decimal = Field(default=Decimal("0"), max_digits=6, decimal_places=4)
    discount_percentage: Optional[Decimal] = Field(default=None, max_digits=5, decimal_places=2)

    active: bool = Field(default=True)
    valid_from: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    valid_until: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
