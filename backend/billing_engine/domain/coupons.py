"""
Coupon Rules

Pure eligibility and discount rules. Usage counts are supplied by the caller
(CouponService derives them from invoices on every validation).
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from billing_engine.domain.money import ZERO, Number, quantize_money, to_decimal
from billing_engine.domain.periods import ensure_utc
from billing_engine.domain.subscription import (
    BillingCycle,
    CouponType,
    PurchaseType,
    SubscriptionTier,
)


HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CouponContext:
    """What the coupon is being applied to."""
    purchase_type: PurchaseType
    subtotal: Decimal
    tier: Optional[SubscriptionTier] = None
    billing_cycle: Optional[BillingCycle] = None


def _allowed(allow_list: Optional[Sequence[str]], value: Any) -> bool:
    """Empty or missing allow-lists allow everything."""
    if not allow_list:
        return True
    raw = value.value if hasattr(value, "value") else value
    return raw in allow_list


def rejection_reason(
    coupon: Any,
    context: CouponContext,
    now: datetime,
    global_uses: int,
    user_uses: int,
) -> Optional[str]:
    """
    Run the eligibility checks in order and return the first failure.

    Returns None when the coupon applies. ``coupon`` is any object exposing
    the Coupon table columns.
    """
    if not coupon.is_active:
        return "inactive"

    if coupon.valid_from is not None and ensure_utc(coupon.valid_from) > now:
        return "not_yet_valid"

    if coupon.valid_until is not None and ensure_utc(coupon.valid_until) <= now:
        return "expired"

    if coupon.max_uses is not None and global_uses >= coupon.max_uses:
        return "usage_limit_reached"

    if coupon.max_uses_per_user is not None and user_uses >= coupon.max_uses_per_user:
        return "user_usage_limit_reached"

    if (
        coupon.min_purchase_amount is not None
        and to_decimal(context.subtotal) < to_decimal(coupon.min_purchase_amount)
    ):
        return "below_minimum_purchase"

    if not _allowed(coupon.purchase_types, context.purchase_type):
        return "purchase_type_not_applicable"

    if context.tier is not None and not _allowed(coupon.applicable_tiers, context.tier):
        return "tier_not_applicable"

    if context.billing_cycle is not None and not _allowed(
        coupon.applicable_cycles, context.billing_cycle
    ):
        return "cycle_not_applicable"

    return None


def calculate_discount(coupon_type: CouponType, discount_value: Number, subtotal: Number) -> Decimal:
    """
    Discount granted by a coupon on ``subtotal``.

    Always within [0, subtotal].
    """
    subtotal = quantize_money(subtotal)
    if subtotal <= ZERO:
        return ZERO

    value = to_decimal(discount_value)
    coupon_type = CouponType(coupon_type)

    if coupon_type == CouponType.PERCENTAGE:
        discount = subtotal * value / HUNDRED
    elif coupon_type == CouponType.FIXED:
        discount = value
    else:
        discount = subtotal

    discount = quantize_money(discount)
    return min(max(discount, ZERO), subtotal)


def calculate_percentage_discount(percentage: Optional[Number], amount: Number) -> Decimal:
    """Price-row discount (percentage of ``amount``), clamped to [0, amount]."""
    if not percentage:
        return ZERO
    return calculate_discount(CouponType.PERCENTAGE, percentage, amount)
