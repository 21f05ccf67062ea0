"""
Subscription Domain Models

Enums, DTOs, and ordering rules for the subscription billing bounded context.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billing_engine.domain.money import Money


class SubscriptionTier(str, Enum):
    """Subscription tier levels (GOLD < PLATINUM < DIAMOND)."""
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"
    DIAMOND = "DIAMOND"


class BillingCycle(str, Enum):
    """Billing cycles (MONTHLY < SIX_MONTHLY < YEARLY < LIFETIME)."""
    MONTHLY = "MONTHLY"
    SIX_MONTHLY = "SIX_MONTHLY"
    YEARLY = "YEARLY"
    LIFETIME = "LIFETIME"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class InvoiceStatus(str, Enum):
    """Invoice status. CANCELLED marks stale unpaid invoices."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment status."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class RefundStatus(str, Enum):
    """Refund status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class CouponType(str, Enum):
    """Coupon discount types."""
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"
    FREE_TRIAL = "FREE_TRIAL"


class PurchaseType(str, Enum):
    """What an invoice pays for."""
    NEW = "NEW"
    RENEWAL = "RENEWAL"
    UPGRADE = "UPGRADE"
    TRIAL_CONVERSION = "TRIAL_CONVERSION"
    REACTIVATION = "REACTIVATION"


class InvoiceItemType(str, Enum):
    """Semantic tag stored in InvoiceItem metadata."""
    SETUP_FEE = "setup_fee"
    RECURRING = "recurring"
    CREDIT = "credit"
    PRORATED_CHARGE = "prorated_charge"
    TRIAL = "trial"


class GatewayStatus(str, Enum):
    """Normalized outcome of a gateway validate/refund call."""
    VALID = "VALID"
    PENDING = "PENDING"
    INVALID = "INVALID"
    FAILED = "FAILED"


# =============================================================================
# Ordering Rules (Business Logic)
# =============================================================================

TIER_ORDER = {
    SubscriptionTier.GOLD: 1,
    SubscriptionTier.PLATINUM: 2,
    SubscriptionTier.DIAMOND: 3,
}

CYCLE_ORDER = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.SIX_MONTHLY: 2,
    BillingCycle.YEARLY: 3,
    BillingCycle.LIFETIME: 4,
}

OPEN_SUBSCRIPTION_STATUSES = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)

# Statuses counted when deciding whether the setup fee is due (once ever)
COUNTED_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.PENDING,
)

DEAD_INVOICE_STATUSES = (InvoiceStatus.FAILED, InvoiceStatus.CANCELLED)

REACTIVATABLE_STATUSES = (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


def is_downgrade(
    current_tier: SubscriptionTier,
    current_cycle: BillingCycle,
    new_tier: SubscriptionTier,
    new_cycle: BillingCycle,
) -> bool:
    """A change is a downgrade if it lowers either the tier or the cycle."""
    return (
        TIER_ORDER[new_tier] < TIER_ORDER[current_tier]
        or CYCLE_ORDER[new_cycle] < CYCLE_ORDER[current_cycle]
    )


def is_same_plan(
    current_tier: SubscriptionTier,
    current_cycle: BillingCycle,
    new_tier: SubscriptionTier,
    new_cycle: BillingCycle,
) -> bool:
    return current_tier == new_tier and current_cycle == new_cycle


# =============================================================================
# Request DTOs
# =============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request DTO for purchasing a subscription."""
    tier: SubscriptionTier = Field(..., description="Subscription tier to purchase")
    billing_cycle: BillingCycle = Field(..., description="Billing cycle")
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    trial_days: int = Field(default=0, ge=0, le=90, description="Free trial length")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    region: Optional[str] = Field(default=None, max_length=20)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        return value or None


class ChangePlanRequest(BaseModel):
    """Request DTO for a mid-cycle plan change (upgrades only)."""
    tier: SubscriptionTier
    billing_cycle: BillingCycle


class InitiatePaymentRequest(BaseModel):
    """Request DTO for starting a gateway checkout for an invoice."""
    invoice_id: int
    payment_method: str = Field(default="card", max_length=50)


class RefundCreateRequest(BaseModel):
    """Request DTO for asking a refund on a paid invoice."""
    reason: str = Field(..., min_length=3, max_length=500)
    amount: Optional[Money] = Field(default=None, gt=0)


class RefundDecisionRequest(BaseModel):
    """Request DTO for an admin refund decision."""
    notes: Optional[str] = Field(default=None, max_length=500)


# =============================================================================
# Response DTOs
# =============================================================================

class SubscriptionRead(BaseModel):
    """Response DTO for a subscription row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    tier: SubscriptionTier
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    currency: str
    start_date: datetime
    end_date: datetime
    trial_end: Optional[datetime] = None
    auto_renew: bool
    cancelled_at: Optional[datetime] = None
    credit_balance: Money


class InvoiceItemRead(BaseModel):
    """Response DTO for an invoice line."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    quantity: int
    unit_price: Money
    total_price: Money
    meta: Optional[dict] = Field(default=None, serialization_alias="metadata")


class InvoiceRead(BaseModel):
    """Response DTO for an invoice and its lines."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    user_id: int
    subscription_id: Optional[int] = None
    purchase_type: PurchaseType
    subtotal: Money
    discount_amount: Money
    tax_amount: Money
    amount: Money
    currency: str
    status: InvoiceStatus
    due_date: datetime
    paid_date: Optional[datetime] = None
    coupon_code: Optional[str] = None
    items: list[InvoiceItemRead] = []


class SubscriptionCheckoutResponse(BaseModel):
    """Response DTO for subscription purchase (idempotent replay returns the same)."""
    subscription: SubscriptionRead
    invoice: InvoiceRead
    replayed: bool = False


class ProrationRead(BaseModel):
    """Response DTO for a proration breakdown."""
    model_config = ConfigDict(from_attributes=True)

    credit: Money
    charge: Money
    days_remaining: int
    total_days: int
    days_used: int
    net_amount: Money
    refund_amount: Money
    is_new_billing_cycle: bool


class ChangePlanResponse(BaseModel):
    """Response DTO for a plan change."""
    subscription: SubscriptionRead
    proration: ProrationRead
    invoice: Optional[InvoiceRead] = None
    replayed: bool = False


class PaymentRead(BaseModel):
    """Response DTO for a payment row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    amount: Money
    currency: str
    status: PaymentStatus
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


class PaymentInitiatedResponse(BaseModel):
    """Response DTO for a started checkout."""
    payment: PaymentRead
    gateway_url: str


class RefundRead(BaseModel):
    """Response DTO for a refund row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    payment_id: Optional[int] = None
    amount: Money
    reason: Optional[str] = None
    status: RefundStatus
    refunded_at: Optional[datetime] = None


class PlanPrice(BaseModel):
    """Pricing information for one tier/cycle combination."""
    model_config = ConfigDict(from_attributes=True)

    tier: SubscriptionTier
    billing_cycle: BillingCycle
    currency: str
    region: str
    price: Money
    setup_fee: Money
    discount_percentage: Optional[Money] = None


class PlansResponse(BaseModel):
    """Response DTO for the plan catalogue grouped by tier."""
    plans: dict[SubscriptionTier, list[PlanPrice]]
