"""
Subscription Service

User-facing subscription commands: purchase, plan change, cancel and
reactivate. Each command is one unit of work.

Invariant: a user holds at most one PENDING or ACTIVE subscription. The
check runs inside the creating unit of work; the partial unique index on
``subscriptions.user_id`` settles the race between two concurrent requests.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.domain.money import ZERO, quantize_money
from billing_engine.domain.periods import (
    Clock,
    SystemClock,
    calculate_dates,
    calculate_end_date,
    trial_end_for,
)
from billing_engine.domain.proration import ProrationResult, calculate_proration
from billing_engine.domain.subscription import (
    BillingCycle,
    InvoiceRead,
    InvoiceStatus,
    PlanPrice,
    PurchaseType,
    REACTIVATABLE_STATUSES,
    SubscriptionRead,
    SubscriptionStatus,
    SubscriptionTier,
    is_downgrade,
    is_same_plan,
)
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models.invoice import Invoice
from billing_engine.infrastructure.db.models.subscription import Subscription
from billing_engine.infrastructure.db.repositories import (
    InvoiceRepository,
    SubscriptionRepository,
)
from billing_engine.infrastructure.exceptions import (
    DowngradeNotAllowedError,
    DuplicateSubscriptionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing_engine.infrastructure.services.invoice_service import InvoiceService, get_invoice_service
from billing_engine.infrastructure.services.pricing_service import PricingService, get_pricing_service
from billing_engine.infrastructure.services.reconciliation_service import (
    ReconciliationService,
    get_reconciliation_service,
)


logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """Subscription and invoice produced (or replayed) by a command."""
    subscription: SubscriptionRead
    invoice: Optional[InvoiceRead]
    replayed: bool = False
    proration: Optional[ProrationResult] = None


def _proration_from_invoice_items(items) -> Optional[ProrationResult]:
    """Rebuild the proration breakdown stored on an upgrade invoice."""
    for item in items:
        stored = (item.meta or {}).get("proration")
        if stored:
            return ProrationResult(
                credit=Decimal(stored["credit"]),
                charge=Decimal(stored["charge"]),
                days_remaining=int(stored["days_remaining"]),
                total_days=int(stored["total_days"]),
                days_used=int(stored["days_used"]),
                net_amount=Decimal(stored["net_amount"]),
                refund_amount=Decimal(stored["refund_amount"]),
                is_new_billing_cycle=stored["is_new_billing_cycle"] == "True",
            )
    return None


class SubscriptionService:
    """Subscription lifecycle commands."""

    def __init__(
        self,
        pricing: Optional[PricingService] = None,
        invoices: Optional[InvoiceService] = None,
        reconciliation: Optional[ReconciliationService] = None,
        clock: Optional[Clock] = None,
    ):
        self._clock = clock or SystemClock()
        self._pricing = pricing or PricingService(self._clock)
        self._invoices = invoices or InvoiceService(clock=self._clock)
        self._reconciliation = reconciliation or ReconciliationService(clock=self._clock)

    async def _result(
        self,
        session: AsyncSession,
        subscription: Subscription,
        invoice: Optional[Invoice],
        replayed: bool = False,
        proration: Optional[ProrationResult] = None,
    ) -> CheckoutResult:
        return CheckoutResult(
            subscription=SubscriptionRead.model_validate(subscription),
            invoice=await self._invoices.to_read(session, invoice) if invoice else None,
            replayed=replayed,
            proration=proration,
        )

    async def _replay(self, session: AsyncSession, user_id: int, idempotency_key: Optional[str]) -> Optional[CheckoutResult]:
        invoice = await self._invoices.get_by_idempotency_key(session, user_id, idempotency_key)
        if invoice is None:
            return None

        subscription = None
        if invoice.subscription_id is not None:
            subscription = await SubscriptionRepository(session).get_by_id(invoice.subscription_id)
        if subscription is None:
            raise InvalidStateError(
                "Idempotency key already used for a different request",
                {"idempotency_key": idempotency_key},
            )

        items = await InvoiceRepository(session).get_items(invoice.id)
        logger.info(f"Replaying request {idempotency_key!r} for user {user_id}: invoice {invoice.invoice_number}")
        return await self._result(
            session, subscription, invoice, replayed=True, proration=_proration_from_invoice_items(items)
        )

    async def _settle_if_free(self, session: AsyncSession, invoice: Invoice) -> None:
        """Zero-amount invoices are paid on the spot."""
        if invoice.status == InvoiceStatus.PENDING.value and quantize_money(invoice.amount) <= ZERO:
            await self._reconciliation.apply_paid_invoice(session, invoice, self._clock.now())

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_plans(self, currency: Optional[str] = None) -> Dict[SubscriptionTier, List[PlanPrice]]:
        async with get_session_context() as session:
            return await self._pricing.list_plans(session, currency)

    async def get_current(self, user_id: int) -> Optional[SubscriptionRead]:
        async with get_session_context() as session:
            subscription = await SubscriptionRepository(session).get_open_for_user(user_id)
            return SubscriptionRead.model_validate(subscription) if subscription else None

    # =========================================================================
    # Commands
    # =========================================================================

    async def create_subscription(
        self,
        user_id: int,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        coupon_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        trial_days: int = 0,
        currency: Optional[str] = None,
        region: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Purchase a subscription.

        A repeated request with the same idempotency key returns the original
        subscription and invoice unchanged.

        Raises:
            DuplicateSubscriptionError: User already has a PENDING/ACTIVE one
            PricingNotFoundError: Plan not sold for the currency/region
        """
        try:
            async with get_session_context() as session:
                replay = await self._replay(session, user_id, idempotency_key)
                if replay is not None:
                    return replay

                subscriptions = SubscriptionRepository(session)
                existing = await subscriptions.get_open_for_user(user_id, for_update=True)
                if existing is not None:
                    raise DuplicateSubscriptionError(
                        "User already has an active or pending subscription",
                        {"subscription_id": existing.id, "status": existing.status},
                    )

                price = await self._pricing.require_pricing(session, tier, billing_cycle, currency, region)
                period = calculate_dates(billing_cycle, self._clock)

                subscription = Subscription(
                    user_id=user_id,
                    tier=SubscriptionTier(tier).value,
                    billing_cycle=BillingCycle(billing_cycle).value,
                    status=SubscriptionStatus.PENDING.value,
                    currency=price.currency,
                    region=price.region,
                    start_date=period.start,
                    end_date=period.end,
                    auto_renew=period.auto_renew,
                    credit_balance=ZERO,
                    created_at=period.start,
                    updated_at=period.start,
                )

                if trial_days > 0:
                    # Paid period starts where the trial ends
                    subscription.status = SubscriptionStatus.ACTIVE.value
                    subscription.trial_end = trial_end_for(period.start, trial_days)
                    subscription.end_date = calculate_end_date(subscription.trial_end, billing_cycle)

                await subscriptions.add(subscription)

                if trial_days > 0:
                    invoice = await self._invoices.generate_trial_invoice(
                        session, subscription, trial_days, idempotency_key=idempotency_key
                    )
                else:
                    invoice = await self._invoices.generate_subscription_invoice(
                        session,
                        subscription,
                        price,
                        PurchaseType.NEW,
                        coupon_code=coupon_code,
                        idempotency_key=idempotency_key,
                    )
                    await self._settle_if_free(session, invoice)

                logger.info(
                    f"Created subscription {subscription.id} for user {user_id}: "
                    f"{subscription.tier}/{subscription.billing_cycle} ({subscription.status})"
                )
                return await self._result(session, subscription, invoice)

        except IntegrityError as e:
            # Lost a race against a concurrent identical request
            async with get_session_context() as session:
                replay = await self._replay(session, user_id, idempotency_key)
                if replay is not None:
                    return replay
            raise DuplicateSubscriptionError(
                "User already has an active or pending subscription",
                original_error=e,
            )

    async def change_plan(
        self,
        subscription_id: int,
        user_id: int,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Upgrade an ACTIVE subscription mid-cycle.

        Downgrades and no-op changes are refused; they are never prorated.
        A positive net amount issues an UPGRADE invoice and the new plan takes
        effect when it is paid. A non-positive net amount switches plans now
        and carries any credit to the next invoice. A cycle change keeps the
        current period end; the new cycle applies from the next renewal.
        """
        tier = SubscriptionTier(tier)
        billing_cycle = BillingCycle(billing_cycle)

        async with get_session_context() as session:
            replay = await self._replay(session, user_id, idempotency_key)
            if replay is not None:
                return replay

            subscription = await SubscriptionRepository(session).get_for_user(subscription_id, user_id)
            if subscription is None:
                raise NotFoundError("Subscription not found", operation="change_plan", table="subscriptions")
            if subscription.status != SubscriptionStatus.ACTIVE.value:
                raise InvalidStateError(
                    f"Only active subscriptions can change plan (status {subscription.status})",
                    {"subscription_id": subscription_id},
                )

            current_tier = SubscriptionTier(subscription.tier)
            current_cycle = BillingCycle(subscription.billing_cycle)

            if is_same_plan(current_tier, current_cycle, tier, billing_cycle):
                raise ValidationError("Subscription is already on this plan")
            if is_downgrade(current_tier, current_cycle, tier, billing_cycle):
                raise DowngradeNotAllowedError(
                    "Downgrades are not supported mid-cycle",
                    {
                        "current": f"{current_tier.value}/{current_cycle.value}",
                        "requested": f"{tier.value}/{billing_cycle.value}",
                    },
                )

            pending = await InvoiceRepository(session).find_live_invoice(
                subscription.id, PurchaseType.UPGRADE, created_since=subscription.start_date
            )
            if pending is not None and pending.status == InvoiceStatus.PENDING.value:
                raise InvalidStateError(
                    "An upgrade is already awaiting payment",
                    {"invoice_id": pending.id},
                )

            current_price = await self._pricing.require_pricing(
                session, current_tier, current_cycle, subscription.currency, subscription.region
            )
            new_price = await self._pricing.require_pricing(
                session, tier, billing_cycle, subscription.currency, subscription.region
            )

            proration = calculate_proration(
                subscription.start_date,
                subscription.end_date,
                current_price.price,
                new_price.price,
                self._clock.now(),
            )

            invoice = None
            if proration.net_amount > ZERO:
                invoice = await self._invoices.generate_upgrade_invoice(
                    session,
                    subscription,
                    proration,
                    new_price,
                    tier,
                    billing_cycle,
                    idempotency_key=idempotency_key,
                )
            else:
                subscription.tier = tier.value
                subscription.billing_cycle = billing_cycle.value
                subscription.auto_renew = billing_cycle != BillingCycle.LIFETIME
                if proration.refund_amount > ZERO:
                    subscription.credit_balance = quantize_money(
                        (subscription.credit_balance or ZERO) + proration.refund_amount
                    )
                await SubscriptionRepository(session).save(subscription)

            logger.info(
                f"Plan change for subscription {subscription.id}: "
                f"{current_tier.value}/{current_cycle.value} -> {tier.value}/{billing_cycle.value}, "
                f"net={proration.net_amount}, credit={proration.refund_amount}"
            )
            return await self._result(session, subscription, invoice, proration=proration)

    async def cancel_subscription(self, subscription_id: int, user_id: int) -> SubscriptionRead:
        """
        Cancel a subscription now. Unpaid invoices for it are cancelled too.

        Raises:
            InvalidStateError: Already CANCELLED or EXPIRED
        """
        async with get_session_context() as session:
            subscription = await SubscriptionRepository(session).get_for_user(subscription_id, user_id)
            if subscription is None:
                raise NotFoundError("Subscription not found", operation="cancel", table="subscriptions")
            if subscription.status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING.value):
                raise InvalidStateError(
                    f"Subscription is already {subscription.status}",
                    {"subscription_id": subscription_id},
                )

            now = self._clock.now()
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = now
            subscription.auto_renew = False
            subscription.renewal_in_progress = False

            invoices = InvoiceRepository(session)
            for purchase_type in PurchaseType:
                invoice = await invoices.find_live_invoice(subscription.id, purchase_type)
                if invoice is not None and invoice.status == InvoiceStatus.PENDING.value:
                    invoice.status = InvoiceStatus.CANCELLED.value
                    invoice.notes = "Subscription cancelled"

            await session.flush()
            logger.info(f"Cancelled subscription {subscription.id} for user {user_id}")
            return SubscriptionRead.model_validate(subscription)

    async def reactivate_subscription(
        self,
        subscription_id: int,
        user_id: int,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Bring a CANCELLED or EXPIRED subscription back to PENDING with a new
        period and a REACTIVATION invoice. The setup fee is not charged again.
        """
        try:
            async with get_session_context() as session:
                replay = await self._replay(session, user_id, idempotency_key)
                if replay is not None:
                    return replay

                subscriptions = SubscriptionRepository(session)
                subscription = await subscriptions.get_for_user(subscription_id, user_id)
                if subscription is None:
                    raise NotFoundError("Subscription not found", operation="reactivate", table="subscriptions")
                if subscription.status not in [status.value for status in REACTIVATABLE_STATUSES]:
                    raise InvalidStateError(
                        f"Cannot reactivate a {subscription.status} subscription",
                        {"subscription_id": subscription_id},
                    )

                other = await subscriptions.get_open_for_user(user_id, for_update=True)
                if other is not None:
                    raise DuplicateSubscriptionError(
                        "User already has an active or pending subscription",
                        {"subscription_id": other.id, "status": other.status},
                    )

                cycle = BillingCycle(subscription.billing_cycle)
                price = await self._pricing.require_pricing(
                    session, subscription.tier, cycle, subscription.currency, subscription.region
                )
                period = calculate_dates(cycle, self._clock)

                subscription.status = SubscriptionStatus.PENDING.value
                subscription.start_date = period.start
                subscription.end_date = period.end
                subscription.auto_renew = period.auto_renew
                subscription.trial_end = None
                subscription.cancelled_at = None
                subscription.expiry_processed = False
                subscription.renewal_in_progress = False
                subscription.last_renewal_attempt = None
                subscription.reminder_sent_at = None
                await subscriptions.save(subscription)

                invoice = await self._invoices.generate_subscription_invoice(
                    session,
                    subscription,
                    price,
                    PurchaseType.REACTIVATION,
                    idempotency_key=idempotency_key,
                    charge_setup_fee=False,
                )
                await self._settle_if_free(session, invoice)

                logger.info(f"Reactivated subscription {subscription.id} for user {user_id}")
                return await self._result(session, subscription, invoice)

        except IntegrityError as e:
            raise DuplicateSubscriptionError(
                "User already has an active or pending subscription",
                original_error=e,
            )


_subscription_service: Optional[SubscriptionService] = None


def get_subscription_service() -> SubscriptionService:
    """Get or create subscription service singleton."""
    global _subscription_service
    if _subscription_service is None:
        _subscription_service = SubscriptionService(
            get_pricing_service(),
            get_invoice_service(),
            get_reconciliation_service(),
        )
    return _subscription_service
