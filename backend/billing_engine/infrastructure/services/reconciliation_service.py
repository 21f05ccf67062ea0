"""
Payment/Refund Reconciliation Service

Applies gateway outcomes to payment, invoice and subscription state.

Pattern for every gateway interaction:
1. read and validate in one unit of work
2. call the gateway with no unit of work open
3. apply the result in a second unit of work that re-checks state

``apply_paid_invoice`` is the single place where a paid invoice changes a
subscription; callbacks, zero-amount invoices and renewals all go through it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.domain.money import ZERO, quantize_money
from billing_engine.domain.periods import Clock, SystemClock, calculate_end_date
from billing_engine.domain.proration import calculate_prorated_refund
from billing_engine.domain.subscription import (
    BillingCycle,
    GatewayStatus,
    InvoiceItemType,
    InvoiceStatus,
    PaymentStatus,
    PurchaseType,
    RefundStatus,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models.invoice import Invoice
from billing_engine.infrastructure.db.models.payment import Payment, Refund
from billing_engine.infrastructure.db.repositories import (
    InvoiceRepository,
    PaymentRepository,
    RefundRepository,
    SubscriptionRepository,
)
from billing_engine.infrastructure.exceptions import (
    InvalidStateError,
    NotFoundError,
    PaymentGatewayError,
    RefundAmountError,
)
from billing_engine.infrastructure.payments.gateway import (
    CheckoutRequest,
    PaymentGateway,
    get_payment_gateway,
)
from billing_engine.infrastructure.services.dunning_service import DunningService, get_dunning_service
from billing_engine.infrastructure.services.invoice_service import mark_invoice_paid, mark_invoice_refunded


logger = logging.getLogger(__name__)


@dataclass
class InitiatedPayment:
    payment: Payment
    redirect_url: str


class ReconciliationService:
    """Gateway callback and refund handling."""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        dunning: Optional[DunningService] = None,
        clock: Optional[Clock] = None,
    ):
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._dunning = dunning or DunningService(gateway, self._clock)

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_payment_gateway()

    # =========================================================================
    # Paid Invoice Effects
    # =========================================================================

    async def apply_paid_invoice(self, session: AsyncSession, invoice: Invoice, now: datetime) -> None:
        """
        Mark an invoice paid and apply its effect on the subscription.

        NEW / TRIAL_CONVERSION / REACTIVATION activate the subscription;
        RENEWAL extends the period from the old end date; UPGRADE switches
        tier and cycle (restarting the period for a fresh-cycle upgrade).
        """
        mark_invoice_paid(invoice, now)

        if invoice.subscription_id is None:
            return

        subscriptions = SubscriptionRepository(session)
        subscription = await subscriptions.get_for_update(invoice.subscription_id)
        if subscription is None:
            logger.warning(f"Invoice {invoice.invoice_number} references missing subscription")
            return

        if subscription.status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING.value):
            other = await subscriptions.get_open_for_user(subscription.user_id)
            if other is not None and other.id != subscription.id:
                logger.warning(
                    f"Invoice {invoice.invoice_number} paid for subscription {subscription.id} "
                    f"but user {subscription.user_id} already holds subscription {other.id}; not reactivating"
                )
                return

        purchase_type = PurchaseType(invoice.purchase_type)

        if purchase_type == PurchaseType.RENEWAL:
            old_end = subscription.end_date
            subscription.start_date = old_end
            subscription.end_date = calculate_end_date(old_end, BillingCycle(subscription.billing_cycle))
            subscription.expiry_processed = False
            subscription.reminder_sent_at = None
            logger.info(f"Subscription {subscription.id} renewed until {subscription.end_date}")

        elif purchase_type == PurchaseType.UPGRADE:
            await self._apply_upgrade(session, subscription, invoice, now)

        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.cancelled_at = None
        await session.flush()

    async def _apply_upgrade(self, session: AsyncSession, subscription, invoice: Invoice, now: datetime) -> None:
        items = await InvoiceRepository(session).get_items(invoice.id)
        target = next(
            (
                item.meta
                for item in items
                if item.meta
                and item.meta.get("type") in (InvoiceItemType.PRORATED_CHARGE.value, InvoiceItemType.RECURRING.value)
                and item.meta.get("tier")
            ),
            None,
        )
        if target is None:
            logger.error(f"Upgrade invoice {invoice.invoice_number} carries no target plan")
            return

        subscription.tier = SubscriptionTier(target["tier"]).value
        subscription.billing_cycle = BillingCycle(target["billing_cycle"]).value
        if target.get("restart_period"):
            subscription.start_date = now
            subscription.end_date = calculate_end_date(now, BillingCycle(subscription.billing_cycle))
            subscription.expiry_processed = False
            subscription.reminder_sent_at = None
        subscription.auto_renew = subscription.billing_cycle != BillingCycle.LIFETIME.value
        logger.info(
            f"Subscription {subscription.id} upgraded to "
            f"{subscription.tier}/{subscription.billing_cycle}"
        )

    # =========================================================================
    # Checkout
    # =========================================================================

    async def initiate_payment(self, invoice_id: int, user_id: int, payment_method: str = "card") -> InitiatedPayment:
        """
        Create a PENDING payment and start a gateway checkout for it.

        Raises:
            NotFoundError: Invoice missing or not owned by the user
            InvalidStateError: Invoice is not payable
            PaymentGatewayError: Gateway refused or timed out (payment FAILED)
        """
        async with get_session_context() as session:
            invoice = await InvoiceRepository(session).get_for_update(invoice_id)
            if invoice is None or invoice.user_id != user_id:
                raise NotFoundError("Invoice not found", operation="initiate_payment", table="invoices")
            if invoice.status != InvoiceStatus.PENDING.value:
                raise InvalidStateError(
                    f"Invoice is {invoice.status}, not payable",
                    {"invoice_id": invoice.id, "status": invoice.status},
                )
            if quantize_money(invoice.amount) <= ZERO:
                raise InvalidStateError("Invoice has nothing to pay", {"invoice_id": invoice.id})

            payment = await PaymentRepository(session).add(
                Payment(
                    invoice_id=invoice.id,
                    user_id=user_id,
                    amount=invoice.amount,
                    currency=invoice.currency,
                    status=PaymentStatus.PENDING.value,
                    payment_method=payment_method,
                    meta={},
                )
            )
            request = CheckoutRequest(
                invoice_id=invoice.id,
                invoice_number=f"{invoice.invoice_number}-P{payment.id}",
                user_id=user_id,
                amount=invoice.amount,
                currency=invoice.currency,
                description=invoice.description or invoice.invoice_number,
                payment_method=payment_method,
            )

        try:
            gateway_session = await self.gateway.initiate(request)
        except PaymentGatewayError as e:
            async with get_session_context() as session:
                failed = await PaymentRepository(session).get_for_update(payment.id)
                self._dunning.record_failure(failed, f"initiate: {e.message}", self._clock.now())
            raise

        async with get_session_context() as session:
            payment = await PaymentRepository(session).get_for_update(payment.id)
            payment.transaction_id = gateway_session.session_key
            payment.meta = {**(payment.meta or {}), "redirect_url": gateway_session.redirect_url}

        logger.info(f"Payment {payment.id} initiated for invoice {invoice_id}")
        return InitiatedPayment(payment=payment, redirect_url=gateway_session.redirect_url)

    # =========================================================================
    # Gateway Callbacks
    # =========================================================================

    async def handle_payment_success(self, transaction_ref: str) -> Payment:
        """
        Validate a transaction with the gateway and apply it.

        Idempotent: an already COMPLETED payment is returned unchanged.
        Payment COMPLETED, invoice COMPLETED and subscription effects are
        written in one unit of work.
        """
        async with get_session_context() as session:
            payment = await PaymentRepository(session).get_by_transaction_id(transaction_ref, for_update=False)
            if payment is None:
                raise NotFoundError("Payment not found", operation="payment_success", table="payments")
            if payment.status == PaymentStatus.COMPLETED.value:
                return payment

        validation = await self.gateway.validate(transaction_ref)

        if validation.status == GatewayStatus.PENDING:
            logger.info(f"Payment {payment.id} still pending at gateway")
            return payment

        if validation.status != GatewayStatus.VALID:
            return await self.handle_payment_failure(transaction_ref, f"validation: {validation.status.value}")

        async with get_session_context() as session:
            payment = await PaymentRepository(session).get_by_transaction_id(transaction_ref)
            if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
                return payment

            now = self._clock.now()
            payment.status = PaymentStatus.COMPLETED.value
            payment.paid_at = now
            payment.bank_transaction_id = validation.bank_transaction_id
            meta = dict(payment.meta or {})
            meta.update({"gateway": validation.raw, "retry_in_progress": False, "next_retry_at": None})
            payment.meta = meta

            invoice = await InvoiceRepository(session).get_for_update(payment.invoice_id)
            if invoice.status == InvoiceStatus.COMPLETED.value:
                logger.warning(f"Invoice {invoice.invoice_number} was already paid; payment {payment.id} is extra")
            else:
                await self.apply_paid_invoice(session, invoice, now)

        logger.info(f"Payment {payment.id} completed for invoice {payment.invoice_id}")
        return payment

    async def handle_payment_failure(self, transaction_ref: str, reason: Optional[str] = None) -> Payment:
        """Mark a payment FAILED and schedule dunning; the subscription is untouched."""
        async with get_session_context() as session:
            payment = await PaymentRepository(session).get_by_transaction_id(transaction_ref)
            if payment is None:
                raise NotFoundError("Payment not found", operation="payment_failure", table="payments")
            if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
                logger.info(f"Ignoring failure callback for {payment.status} payment {payment.id}")
                return payment
            self._dunning.record_failure(payment, reason or "payment_failed", self._clock.now())
            return payment

    # =========================================================================
    # Refunds
    # =========================================================================

    async def refundable_amount(self, session: AsyncSession, invoice_id: int) -> Decimal:
        """Completed payments minus completed refunds."""
        paid = await PaymentRepository(session).sum_completed(invoice_id)
        refunded = await RefundRepository(session).sum_completed(invoice_id)
        return max(quantize_money(paid - refunded), ZERO)

    async def request_refund(
        self,
        invoice_id: int,
        user_id: int,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> Refund:
        """
        Open a PENDING refund request on a paid invoice.

        Without an explicit amount, a subscription invoice defaults to the
        unused share of the current period; other invoices default to the
        whole refundable balance.
        """
        async with get_session_context() as session:
            invoice = await InvoiceRepository(session).get_for_update(invoice_id)
            if invoice is None or invoice.user_id != user_id:
                raise NotFoundError("Invoice not found", operation="request_refund", table="invoices")
            if invoice.status != InvoiceStatus.COMPLETED.value:
                raise InvalidStateError(
                    f"Invoice is {invoice.status}, only paid invoices can be refunded",
                    {"invoice_id": invoice.id, "status": invoice.status},
                )

            refundable = await self.refundable_amount(session, invoice_id)
            refundable -= await RefundRepository(session).sum_reserved(invoice_id)
            if amount is not None:
                amount = quantize_money(amount)
            else:
                amount = await self._default_refund_amount(session, invoice, refundable)

            if amount <= ZERO or amount > refundable:
                raise RefundAmountError(
                    f"Refund amount {amount} exceeds refundable balance {refundable}",
                    {"requested": str(amount), "refundable": str(max(refundable, ZERO))},
                )

            payment = await PaymentRepository(session).get_completed_for_invoice(invoice_id)
            refund = await RefundRepository(session).add(
                Refund(
                    invoice_id=invoice_id,
                    payment_id=payment.id if payment else None,
                    user_id=user_id,
                    amount=amount,
                    reason=reason,
                    status=RefundStatus.PENDING.value,
                )
            )

        logger.info(f"Refund {refund.id} requested for invoice {invoice_id}: {amount}")
        return refund

    async def _default_refund_amount(self, session: AsyncSession, invoice: Invoice, refundable: Decimal) -> Decimal:
        if invoice.subscription_id is None:
            return refundable
        subscription = await SubscriptionRepository(session).get_by_id(invoice.subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            return refundable
        unused = calculate_prorated_refund(
            subscription.start_date, subscription.end_date, refundable, self._clock.now()
        )
        return min(unused, refundable)

    async def approve_refund(self, refund_id: int, admin_id: int) -> Refund:
        """
        Execute an approved refund.

        The refund is claimed (PROCESSING) under the invoice row lock, so only
        one refund per invoice is ever at the gateway. After the gateway
        refund, refund, invoice, payments and subscription are updated in one
        unit of work; other PENDING requests on the invoice are rejected since
        the invoice is refunded as a whole.
        """
        async with get_session_context() as session:
            refunds = RefundRepository(session)
            refund = await refunds.get_by_id(refund_id)
            if refund is None:
                raise NotFoundError("Refund not found", operation="approve_refund", table="refunds")

            await InvoiceRepository(session).get_for_update(refund.invoice_id)
            refund = await refunds.get_for_update(refund_id)
            if refund.status != RefundStatus.PENDING.value:
                raise InvalidStateError(f"Refund is already {refund.status}", {"refund_id": refund_id})
            if await refunds.list_by_status(refund.invoice_id, RefundStatus.PROCESSING):
                raise InvalidStateError(
                    "Another refund for this invoice is being processed",
                    {"refund_id": refund_id, "invoice_id": refund.invoice_id},
                )

            refundable = await self.refundable_amount(session, refund.invoice_id)
            if refund.amount > refundable:
                raise RefundAmountError(
                    f"Refund amount {refund.amount} exceeds refundable balance {refundable}",
                    {"requested": str(refund.amount), "refundable": str(refundable)},
                )

            payment = None
            if refund.payment_id is not None:
                payment = await PaymentRepository(session).get_by_id(refund.payment_id)
            if payment is None or not payment.bank_transaction_id:
                raise InvalidStateError("Refund has no captured payment to reverse", {"refund_id": refund_id})
            invoice_id = refund.invoice_id
            bank_ref = payment.bank_transaction_id
            amount = refund.amount
            remarks = refund.reason or f"Refund {refund.id}"
            refund.status = RefundStatus.PROCESSING.value
            refund.processed_by = admin_id

        try:
            result = await self.gateway.refund(bank_ref, amount, remarks)
            if result.status != GatewayStatus.VALID:
                raise PaymentGatewayError(f"Gateway refund status {result.status.value}", operation="refund")
        except PaymentGatewayError as e:
            async with get_session_context() as session:
                failed = await RefundRepository(session).get_for_update(refund_id)
                failed.status = RefundStatus.FAILED.value
                failed.notes = e.message
                failed.processed_by = admin_id
                failed.processed_at = self._clock.now()
            raise

        async with get_session_context() as session:
            refunds = RefundRepository(session)
            invoice = await InvoiceRepository(session).get_for_update(invoice_id)
            refund = await refunds.get_for_update(refund_id)
            if refund.status != RefundStatus.PROCESSING.value:
                return refund

            now = self._clock.now()
            notes = f"Gateway refund {result.refund_reference}"
            # The gateway already moved the money; record it either way
            refundable = await self.refundable_amount(session, invoice_id)
            if refund.amount > refundable:
                logger.error(
                    f"Refund {refund_id} of {refund.amount} exceeds refundable balance {refundable} "
                    f"of invoice {invoice_id} after gateway refund {result.refund_reference}"
                )
                notes += f"; exceeded refundable balance {refundable}, needs review"

            refund.status = RefundStatus.COMPLETED.value
            refund.refunded_at = now
            refund.processed_at = now
            refund.notes = notes

            mark_invoice_refunded(invoice, f"Refund {refund.id} of {refund.amount}")

            for invoice_payment in await PaymentRepository(session).list_for_invoice(invoice.id):
                invoice_payment.status = PaymentStatus.REFUNDED.value

            for sibling in await refunds.list_by_status(invoice.id, RefundStatus.PENDING):
                sibling.status = RefundStatus.REJECTED.value
                sibling.processed_by = admin_id
                sibling.processed_at = now
                sibling.notes = f"Invoice refunded by refund {refund.id}"

            if invoice.subscription_id is not None:
                subscription = await SubscriptionRepository(session).get_for_update(invoice.subscription_id)
                if subscription is not None:
                    subscription.status = SubscriptionStatus.CANCELLED.value
                    subscription.cancelled_at = now
                    subscription.auto_renew = False

        logger.info(f"Refund {refund_id} completed for invoice {refund.invoice_id}")
        return refund

    async def reject_refund(self, refund_id: int, admin_id: int, notes: Optional[str] = None) -> Refund:
        async with get_session_context() as session:
            refund = await RefundRepository(session).get_for_update(refund_id)
            if refund is None:
                raise NotFoundError("Refund not found", operation="reject_refund", table="refunds")
            if refund.status != RefundStatus.PENDING.value:
                raise InvalidStateError(f"Refund is already {refund.status}", {"refund_id": refund_id})

            refund.status = RefundStatus.REJECTED.value
            refund.processed_by = admin_id
            refund.processed_at = self._clock.now()
            refund.notes = notes

        logger.info(f"Refund {refund_id} rejected by {admin_id}")
        return refund


_reconciliation_service: Optional[ReconciliationService] = None


def get_reconciliation_service() -> ReconciliationService:
    """Get or create reconciliation service singleton."""
    global _reconciliation_service
    if _reconciliation_service is None:
        _reconciliation_service = ReconciliationService(dunning=get_dunning_service())
    return _reconciliation_service
