"""
Billing Services

Application services composing repositories, the gateway and the queue.
"""

from billing_engine.infrastructure.services.pricing_service import (
    PricingService,
    get_pricing_service,
)
from billing_engine.infrastructure.services.coupon_service import (
    CouponService,
    get_coupon_service,
)
from billing_engine.infrastructure.services.invoice_service import (
    InvoiceService,
    get_invoice_service,
)
from billing_engine.infrastructure.services.dunning_service import (
    DunningService,
    get_dunning_service,
)
from billing_engine.infrastructure.services.reconciliation_service import (
    ReconciliationService,
    get_reconciliation_service,
)
from billing_engine.infrastructure.services.subscription_service import (
    CheckoutResult,
    SubscriptionService,
    get_subscription_service,
)

__all__ = [
    "PricingService",
    "get_pricing_service",
    "CouponService",
    "get_coupon_service",
    "InvoiceService",
    "get_invoice_service",
    "DunningService",
    "get_dunning_service",
    "ReconciliationService",
    "get_reconciliation_service",
    "CheckoutResult",
    "SubscriptionService",
    "get_subscription_service",
]
