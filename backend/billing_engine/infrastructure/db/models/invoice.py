"""
Invoice Database Models

SQLModel tables for invoices and their line items.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Column, UniqueConstraint
from sqlmodel import Field

from billing_engine.domain.money import ZERO
from billing_engine.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime


class Invoice(BaseModel, table=True):
    """
    Invoice table.

    ``idempotency_key`` is unique per user; NULL keys never collide.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_invoices_user_idempotency_key"),
    )

    invoice_number: str = Field(max_length=64, unique=True, index=True)
    user_id: int = Field(index=True, nullable=False)
    subscription_id: Optional[int] = Field(
        default=None, foreign_key="subscriptions.id", index=True
    )

    purchase_type: str = Field(max_length=30)
    subtotal: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    discount_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    tax_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", max_length=3)

    status: str = Field(default="PENDING", max_length=20, index=True)
    due_date: datetime = Field(sa_type=UTCDateTime, nullable=False)
    paid_date: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    coupon_code: Optional[str] = Field(default=None, max_length=50, index=True)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None)


class InvoiceItem(BaseModel, table=True):
    """Invoice line. ``meta["type"]`` tags the semantic component."""

    __tablename__ = "invoice_items"

    invoice_id: int = Field(foreign_key="invoices.id", index=True, nullable=False)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    quantity: int = Field(default=1)
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)
    total_price: Decimal = Field(max_digits=12, decimal_places=2)
    meta: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSONType, nullable=True)
    )
