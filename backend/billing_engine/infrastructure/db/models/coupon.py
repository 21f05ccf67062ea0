"""
Coupon Database Model

Usage is never stored; it is counted from invoices carrying the code.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column
from sqlmodel import Field

from billing_engine.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime


class Coupon(BaseModel, table=True):
    """Coupon table. Codes are stored upper-case."""

    __tablename__ = "coupons"

    code: str = Field(max_length=50, unique=True, index=True)
    type: str = Field(max_length=20)
    discount_value: Decimal = Field(max_digits=12, decimal_places=2)
    min_purchase_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)

    max_uses: Optional[int] = Field(default=None)
    max_uses_per_user: Optional[int] = Field(default=None)

    valid_from: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    valid_until: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    is_active: bool = Field(default=True)

    # Allow-lists (None or empty = any)
    applicable_tiers: Optional[list[str]] = Field(default=None, sa_column=Column(JSONType))
    applicable_cycles: Optional[list[str]] = Field(default=None, sa_column=Column(JSONType))
    purchase_types: Optional[list[str]] = Field(default=None, sa_column=Column(JSONType))
