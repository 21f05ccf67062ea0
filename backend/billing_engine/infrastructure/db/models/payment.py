"""
Payment Database Models

SQLModel tables for gateway payments and refunds.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Column
from sqlmodel import Field

from billing_engine.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime


class Payment(BaseModel, table=True):
    """
    Payment table.

    Dunning bookkeeping lives in ``meta`` and is read and written only
    through ``billing_engine.domain.retry_state.RetryState``.
    """

    __tablename__ = "payments"

    invoice_id: int = Field(foreign_key="invoices.id", index=True, nullable=False)
    user_id: int = Field(index=True, nullable=False)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", max_length=3)
    status: str = Field(default="PENDING", max_length=20, index=True)

    payment_method: Optional[str] = Field(default=None, max_length=50)
    payment_provider: str = Field(default="stripe", max_length=50)
    transaction_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    bank_transaction_id: Optional[str] = Field(default=None, max_length=255)
    paid_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    meta: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSONType, nullable=True)
    )


class Refund(BaseModel, table=True):
    """Refund request against a paid invoice."""

    __tablename__ = "refunds"

    invoice_id: int = Field(foreign_key="invoices.id", index=True, nullable=False)
    payment_id: Optional[int] = Field(default=None, foreign_key="payments.id")
    user_id: int = Field(index=True, nullable=False)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=500)
    status: str = Field(default="PENDING", max_length=20, index=True)

    processed_by: Optional[int] = Field(default=None)
    processed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    refunded_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    notes: Optional[str] = Field(default=None)
