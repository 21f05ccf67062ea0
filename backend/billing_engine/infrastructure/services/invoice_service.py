"""
Invoice Service

Composes invoices and their line items.

Amount composition for plan invoices:

    subtotal  = plan price + setup fee (first subscription only) - carried credit
    discount  = price-row discount on the plan price, then coupon on the rest,
                clamped to the subtotal
    tax       = (subtotal - discount) * tax_rate
    amount    = subtotal - discount + tax

Every value is quantized to two places. One InvoiceItem is written per
component, tagged with ``meta["type"]``.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config.settings import get_settings
from billing_engine.domain.coupons import (
    CouponContext,
    calculate_discount,
    calculate_percentage_discount,
)
from billing_engine.domain.money import ZERO, quantize_money, to_decimal
from billing_engine.domain.periods import Clock, SystemClock, add_days
from billing_engine.domain.proration import ProrationResult
from billing_engine.domain.subscription import (
    BillingCycle,
    InvoiceItemRead,
    InvoiceItemType,
    InvoiceRead,
    InvoiceStatus,
    PurchaseType,
    SubscriptionTier,
)
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models.invoice import Invoice, InvoiceItem
from billing_engine.infrastructure.db.models.subscription import Subscription, SubscriptionPrice
from billing_engine.infrastructure.db.repositories import (
    InvoiceRepository,
    SubscriptionRepository,
)
from billing_engine.infrastructure.services.coupon_service import CouponService, get_coupon_service


logger = logging.getLogger(__name__)


TIER_NAMES = {
    SubscriptionTier.GOLD: "Gold",
    SubscriptionTier.PLATINUM: "Platinum",
    SubscriptionTier.DIAMOND: "Diamond",
}

CYCLE_NAMES = {
    BillingCycle.MONTHLY: "Monthly",
    BillingCycle.SIX_MONTHLY: "Six-Monthly",
    BillingCycle.YEARLY: "Yearly",
    BillingCycle.LIFETIME: "Lifetime",
}


def plan_name(tier: str, billing_cycle: str) -> str:
    return f"{TIER_NAMES[SubscriptionTier(tier)]} {CYCLE_NAMES[BillingCycle(billing_cycle)]} Plan"


def generate_invoice_number(now: datetime) -> str:
    """INV-YYYYMM-XXXXXX-<epoch ms>"""
    random_part = f"{secrets.randbelow(1_000_000):06d}"
    return f"INV-{now:%Y%m}-{random_part}-{int(now.timestamp() * 1000)}"


@dataclass(frozen=True)
class InvoiceTotals:
    """Computed amounts for an invoice before it is persisted."""
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    amount: Decimal


def compute_totals(subtotal, discount, tax_rate) -> InvoiceTotals:
    """Quantized subtotal/discount/tax/amount; discount clamped to [0, subtotal]."""
    subtotal = quantize_money(subtotal)
    discount = min(max(quantize_money(discount), ZERO), max(subtotal, ZERO))
    taxable = subtotal - discount
    tax = quantize_money(taxable * to_decimal(tax_rate or 0))
    return InvoiceTotals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        amount=quantize_money(taxable + tax),
    )


def _item(
    name: str,
    unit_price: Decimal,
    item_type: InvoiceItemType,
    description: Optional[str] = None,
    **meta,
) -> InvoiceItem:
    unit_price = quantize_money(unit_price)
    return InvoiceItem(
        name=name,
        description=description,
        quantity=1,
        unit_price=unit_price,
        total_price=unit_price,
        meta={"type": item_type.value, **meta},
    )


class InvoiceService:
    """
    Invoice generator.

    All ``generate_*`` methods work inside the caller's unit of work and only
    flush; the caller's ``get_session_context()`` commits.
    """

    def __init__(self, coupon_service: Optional[CouponService] = None, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._coupons = coupon_service or CouponService(self._clock)
        self._settings = get_settings()

    # =========================================================================
    # Queries
    # =========================================================================

    async def is_first_subscription(
        self,
        session: AsyncSession,
        user_id: int,
        exclude_subscription_id: Optional[int] = None,
    ) -> bool:
        """
        True when the user has never held a subscription before.

        The setup fee is charged once ever, not once per lapsed period.
        """
        count = await SubscriptionRepository(session).count_for_user(
            user_id, exclude_subscription_id=exclude_subscription_id
        )
        return count == 0

    async def get_by_idempotency_key(
        self,
        session: AsyncSession,
        user_id: int,
        idempotency_key: Optional[str],
    ) -> Optional[Invoice]:
        if not idempotency_key:
            return None
        return await InvoiceRepository(session).get_by_idempotency_key(user_id, idempotency_key)

    async def to_read(self, session: AsyncSession, invoice: Invoice) -> InvoiceRead:
        """Invoice with its items as a response DTO."""
        items = await InvoiceRepository(session).get_items(invoice.id)
        read = InvoiceRead.model_validate(invoice)
        read.items = [InvoiceItemRead.model_validate(item) for item in items]
        return read

    # =========================================================================
    # Generators
    # =========================================================================

    async def _persist(
        self,
        session: AsyncSession,
        invoice: Invoice,
        items: List[InvoiceItem],
    ) -> Invoice:
        repo = InvoiceRepository(session)
        await repo.add(invoice)
        await repo.add_items(invoice, items)
        logger.info(
            f"Created {invoice.purchase_type} invoice {invoice.invoice_number} "
            f"for user {invoice.user_id}: amount={invoice.amount} {invoice.currency}"
        )
        return invoice

    def _new_invoice(
        self,
        user_id: int,
        subscription: Optional[Subscription],
        purchase_type: PurchaseType,
        currency: str,
        totals: InvoiceTotals,
        now: datetime,
        idempotency_key: Optional[str] = None,
        coupon_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Invoice:
        return Invoice(
            invoice_number=generate_invoice_number(now),
            user_id=user_id,
            subscription_id=subscription.id if subscription else None,
            purchase_type=purchase_type.value,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            tax_amount=totals.tax_amount,
            amount=totals.amount,
            currency=currency,
            status=InvoiceStatus.PENDING.value,
            due_date=add_days(now, self._settings.invoice_due_days),
            coupon_code=coupon_code,
            idempotency_key=idempotency_key,
            description=description,
            created_at=now,
            updated_at=now,
        )

    async def generate_subscription_invoice(
        self,
        session: AsyncSession,
        subscription: Subscription,
        price: SubscriptionPrice,
        purchase_type: PurchaseType,
        coupon_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        charge_setup_fee: Optional[bool] = None,
    ) -> Invoice:
        """
        Plan invoice for NEW, RENEWAL, TRIAL_CONVERSION and REACTIVATION.

        Args:
            session: Unit of work (subscription already flushed)
            subscription: Subscription being billed
            price: Active price row for its plan
            purchase_type: What the invoice pays for
            coupon_code: Optional coupon; silently ignored when not applicable
            idempotency_key: Client key stored on the invoice
            charge_setup_fee: Force the setup fee on or off; None means
                "only for the user's first subscription"

        Returns:
            The flushed PENDING invoice
        """
        now = self._clock.now()
        tier = SubscriptionTier(subscription.tier)
        cycle = BillingCycle(subscription.billing_cycle)
        plan_price = quantize_money(price.price)
        setup_fee = quantize_money(price.setup_fee or ZERO)

        if charge_setup_fee is None:
            charge_setup_fee = await self.is_first_subscription(
                session, subscription.user_id, exclude_subscription_id=subscription.id
            )

        items: List[InvoiceItem] = []
        gross = plan_price

        if charge_setup_fee and setup_fee > ZERO:
            items.append(
                _item(
                    "Setup Fee",
                    setup_fee,
                    InvoiceItemType.SETUP_FEE,
                    description="One-time account setup fee",
                )
            )
            gross += setup_fee

        items.append(
            _item(
                plan_name(tier, cycle),
                plan_price,
                InvoiceItemType.RECURRING,
                description=f"{cycle.value} subscription",
                tier=tier.value,
                billing_cycle=cycle.value,
            )
        )

        credit = min(quantize_money(subscription.credit_balance or ZERO), gross)
        if credit > ZERO:
            items.append(
                _item(
                    "Account Credit",
                    -credit,
                    InvoiceItemType.CREDIT,
                    description="Credit carried from a previous plan change",
                )
            )
            subscription.credit_balance = quantize_money(subscription.credit_balance - credit)

        subtotal = gross - credit

        # Price-row discount first, coupon on what remains
        discount = calculate_percentage_discount(price.discount_percentage, plan_price)
        discount = min(discount, subtotal)

        coupon = await self._coupons.validate_coupon(
            session,
            coupon_code,
            subscription.user_id,
            CouponContext(
                purchase_type=purchase_type,
                subtotal=subtotal,
                tier=tier,
                billing_cycle=cycle,
            ),
        )
        if coupon is not None:
            discount += calculate_discount(coupon.type, coupon.discount_value, subtotal - discount)

        totals = compute_totals(subtotal, discount, price.tax_rate)
        invoice = self._new_invoice(
            subscription.user_id,
            subscription,
            purchase_type,
            subscription.currency,
            totals,
            now,
            idempotency_key=idempotency_key,
            coupon_code=coupon.code if coupon else None,
            description=f"{purchase_type.value.replace('_', ' ').title()}: {plan_name(tier, cycle)}",
        )
        return await self._persist(session, invoice, items)

    async def generate_upgrade_invoice(
        self,
        session: AsyncSession,
        subscription: Subscription,
        proration: ProrationResult,
        new_price: SubscriptionPrice,
        target_tier: SubscriptionTier,
        target_cycle: BillingCycle,
        idempotency_key: Optional[str] = None,
    ) -> Invoice:
        """
        Invoice for a mid-cycle upgrade.

        Prorated: a negative ``credit`` line and a ``prorated_charge`` line,
        subtotal = proration net amount (which includes the minimum-charge
        floor). Fresh cycle: a single ``recurring`` line at the new price that
        restarts the period when paid.
        """
        now = self._clock.now()
        target = {
            "tier": target_tier.value,
            "billing_cycle": target_cycle.value,
            "proration": {key: str(value) for key, value in proration.to_dict().items()},
        }

        items: List[InvoiceItem] = []
        if proration.is_new_billing_cycle:
            items.append(
                _item(
                    plan_name(target_tier, target_cycle),
                    proration.charge,
                    InvoiceItemType.RECURRING,
                    description="New billing period on the upgraded plan",
                    restart_period=True,
                    **target,
                )
            )
        else:
            if proration.credit > ZERO:
                items.append(
                    _item(
                        f"Unused time on {plan_name(subscription.tier, subscription.billing_cycle)}",
                        -proration.credit,
                        InvoiceItemType.CREDIT,
                        description=f"{proration.days_remaining} of {proration.total_days} days",
                    )
                )
            items.append(
                _item(
                    f"Remaining time on {plan_name(target_tier, target_cycle)}",
                    proration.charge,
                    InvoiceItemType.PRORATED_CHARGE,
                    description=f"{proration.days_remaining} of {proration.total_days} days",
                    **target,
                )
            )

        totals = compute_totals(proration.net_amount, ZERO, new_price.tax_rate)
        invoice = self._new_invoice(
            subscription.user_id,
            subscription,
            PurchaseType.UPGRADE,
            subscription.currency,
            totals,
            now,
            idempotency_key=idempotency_key,
            description=f"Upgrade to {plan_name(target_tier, target_cycle)}",
        )
        return await self._persist(session, invoice, items)

    async def generate_trial_invoice(
        self,
        session: AsyncSession,
        subscription: Subscription,
        trial_days: int,
        idempotency_key: Optional[str] = None,
    ) -> Invoice:
        """
        Zero-amount, already COMPLETED invoice recording the start of a trial.

        It carries the idempotency key of the purchase request.
        """
        now = self._clock.now()
        tier = SubscriptionTier(subscription.tier)
        cycle = BillingCycle(subscription.billing_cycle)

        items = [
            _item(
                f"{plan_name(tier, cycle)} Free Trial",
                ZERO,
                InvoiceItemType.TRIAL,
                description=f"{trial_days}-day free trial",
                tier=tier.value,
                billing_cycle=cycle.value,
                trial_days=trial_days,
            )
        ]
        totals = compute_totals(ZERO, ZERO, ZERO)
        invoice = self._new_invoice(
            subscription.user_id,
            subscription,
            PurchaseType.NEW,
            subscription.currency,
            totals,
            now,
            idempotency_key=idempotency_key,
            description=f"Free trial: {plan_name(tier, cycle)}",
        )
        mark_invoice_paid(invoice, now)
        return await self._persist(session, invoice, items)

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cancel_stale_invoices(self) -> dict:
        """
        Cancel PENDING invoices older than STALE_INVOICE_DAYS.

        Cursor-paginated; each batch commits on its own.
        """
        now = self._clock.now()
        cutoff = add_days(now, -self._settings.stale_invoice_days)
        limit = self._settings.scan_batch_size
        note = f"Automatically cancelled - unpaid for more than {self._settings.stale_invoice_days} days"

        stats = {"scanned": 0, "cancelled": 0}
        after_id = 0
        while True:
            async with get_session_context() as session:
                invoices = await InvoiceRepository(session).select_stale_pending(cutoff, after_id, limit)
                for invoice in invoices:
                    invoice.status = InvoiceStatus.CANCELLED.value
                    invoice.notes = note
                await session.flush()

            if not invoices:
                break

            stats["scanned"] += len(invoices)
            stats["cancelled"] += len(invoices)
            after_id = invoices[-1].id
            if len(invoices) < limit:
                break

        if stats["cancelled"]:
            logger.info(f"[SCAN] Cancelled {stats['cancelled']} stale invoices")
        return stats


# =============================================================================
# State Transitions (caller's unit of work)
# =============================================================================

def mark_invoice_paid(invoice: Invoice, now: datetime) -> None:
    invoice.status = InvoiceStatus.COMPLETED.value
    invoice.paid_date = now


def mark_invoice_refunded(invoice: Invoice, note: Optional[str] = None) -> None:
    invoice.status = InvoiceStatus.REFUNDED.value
    if note:
        invoice.notes = note


def mark_invoice_failed(invoice: Invoice, note: str) -> None:
    invoice.status = InvoiceStatus.FAILED.value
    invoice.notes = note


_invoice_service: Optional[InvoiceService] = None


def get_invoice_service() -> InvoiceService:
    """Get or create invoice service singleton."""
    global _invoice_service
    if _invoice_service is None:
        _invoice_service = InvoiceService(get_coupon_service())
    return _invoice_service
