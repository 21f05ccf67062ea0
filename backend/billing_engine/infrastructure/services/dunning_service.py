"""
Dunning Service

Bounded-retry recovery for failed payments.

A failed payment is retried on a fixed schedule (3, 5, then 7 days by
default). Once it has used ``max_retries`` attempts it is escalated to
permanent failure, which in a single unit of work fails the payment and,
while its invoice is still unpaid, fails the invoice and expires the linked
subscription if it is still ACTIVE or PENDING.

A retry claim (``retry_in_progress``) that outlives the lease is treated as
abandoned by a crashed worker and the payment becomes eligible again.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config.settings import get_settings
from billing_engine.domain import retry_state
from billing_engine.domain.periods import Clock, SystemClock, add_hours
from billing_engine.domain.retry_state import RetryState
from billing_engine.domain.subscription import (
    InvoiceStatus,
    OPEN_SUBSCRIPTION_STATUSES,
    PaymentStatus,
    SubscriptionStatus,
)
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models.invoice import Invoice
from billing_engine.infrastructure.db.models.payment import Payment
from billing_engine.infrastructure.db.repositories import (
    InvoiceRepository,
    PaymentRepository,
    SubscriptionRepository,
)
from billing_engine.infrastructure.exceptions import PaymentGatewayError, QueueError
from billing_engine.infrastructure.payments.gateway import (
    CheckoutRequest,
    PaymentGateway,
    get_payment_gateway,
)
from billing_engine.infrastructure.queue.work_queue import TOPIC_PAYMENT_RETRY, WorkQueue
from billing_engine.infrastructure.services.invoice_service import mark_invoice_failed


logger = logging.getLogger(__name__)


class DunningService:
    """Failed-payment retry state machine."""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        clock: Optional[Clock] = None,
    ):
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._settings = get_settings()

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_payment_gateway()

    @property
    def delays(self) -> List[int]:
        return self._settings.dunning_retry_delays_days

    def get_state(self, payment: Payment) -> RetryState:
        return RetryState.from_metadata(payment.meta, max_retries=self._settings.dunning_max_retries)

    def _store(self, payment: Payment, state: RetryState) -> None:
        # New dict so the JSON column is flagged dirty
        payment.meta = state.merge_into(payment.meta)

    # =========================================================================
    # Transitions (caller's unit of work)
    # =========================================================================

    def record_failure(self, payment: Payment, reason: Optional[str], now: Optional[datetime] = None) -> RetryState:
        """
        Mark a payment FAILED and schedule its next retry window.

        The attempt counter is not changed: a gateway failure callback is not
        a retry attempt.
        """
        now = now or self._clock.now()
        state = retry_state.record_failure(self.get_state(payment), reason, now, self.delays)
        payment.status = PaymentStatus.FAILED.value
        self._store(payment, state)
        logger.info(
            f"[DUNNING] Payment {payment.id} failed ({reason}); "
            f"attempts={state.retry_attempts}/{state.max_retries}, next retry {state.next_retry_at}"
        )
        return state

    async def escalate(self, session: AsyncSession, payment: Payment, now: datetime) -> None:
        """
        Permanent failure of payment, invoice and subscription together.

        Invoice and subscription are only touched while the invoice is still
        PENDING: an invoice settled by another payment (or cancelled) keeps
        its state and so does its subscription.

        The caller must hold the payment row lock.
        """
        state = retry_state.mark_permanent(self.get_state(payment), now)
        payment.status = PaymentStatus.FAILED.value
        self._store(payment, state)

        invoice = await InvoiceRepository(session).get_for_update(payment.invoice_id)
        if invoice is None or invoice.status != InvoiceStatus.PENDING.value:
            await session.flush()
            logger.info(
                f"[DUNNING] Payment {payment.id} closed; invoice "
                f"{invoice.status if invoice else 'missing'} is left as is"
            )
            return

        mark_invoice_failed(invoice, f"Payment permanently failed after {state.retry_attempts} retry attempts")

        if invoice.subscription_id is not None:
            subscription = await SubscriptionRepository(session).get_for_update(invoice.subscription_id)
            if subscription is not None and subscription.status in [s.value for s in OPEN_SUBSCRIPTION_STATUSES]:
                subscription.status = SubscriptionStatus.EXPIRED.value
                subscription.renewal_in_progress = False
                logger.info(f"[DUNNING] Subscription {subscription.id} expired after dunning exhaustion")

        await session.flush()
        logger.warning(f"[DUNNING] Payment {payment.id} permanently failed")

    async def mark_permanently_failed(self, payment_id: int) -> bool:
        """
        Escalate one payment in its own unit of work.

        Returns:
            True if the payment was escalated now, False if it already was or
            no longer qualifies
        """
        async with get_session_context() as session:
            payment = await PaymentRepository(session).get_for_update(payment_id)
            if payment is None or payment.status != PaymentStatus.FAILED.value:
                return False
            state = self.get_state(payment)
            if state.permanently_failed:
                return False
            await self.escalate(session, payment, self._clock.now())
            return True

    # =========================================================================
    # Scan
    # =========================================================================

    async def scan_payment_retries(self, queue: WorkQueue) -> dict:
        """
        Dispatch due retries and escalate exhausted payments.

        FAILED payments are paged by ascending id; the retry state filter runs
        in Python since it lives in the metadata blob. Due payments are
        claimed (``retry_in_progress`` + ``retry_claimed_at``) and committed
        before being enqueued. Claims older than the retry lease are taken
        over, since the worker holding them is gone.
        """
        now = self._clock.now()
        lease_cutoff = add_hours(now, -self._settings.dunning_retry_lease_hours)
        limit = self._settings.scan_batch_size
        stats = {"scanned": 0, "dispatched": 0, "escalated": 0, "reclaimed": 0, "failed": 0}

        after_id = 0
        while True:
            to_retry: List[int] = []
            to_escalate: List[int] = []

            async with get_session_context() as session:
                payments = await PaymentRepository(session).select_failed(after_id, limit)
                for payment in payments:
                    state = self.get_state(payment)
                    if state.retry_in_progress and not state.is_claimed(lease_cutoff):
                        logger.warning(
                            f"[DUNNING] Retry claim on payment {payment.id} from {state.retry_claimed_at} lapsed"
                        )
                        stats["reclaimed"] += 1
                    if state.needs_escalation(now, lease_cutoff):
                        to_escalate.append(payment.id)
                    elif state.is_eligible(now, lease_cutoff):
                        self._store(payment, retry_state.claim(state, now))
                        to_retry.append(payment.id)
                await session.flush()

            if not payments:
                break
            stats["scanned"] += len(payments)
            after_id = payments[-1].id

            for payment_id in to_escalate:
                try:
                    if await self.mark_permanently_failed(payment_id):
                        stats["escalated"] += 1
                except Exception:
                    stats["failed"] += 1
                    logger.exception(f"[DUNNING] Failed to escalate payment {payment_id}")

            for payment_id in to_retry:
                try:
                    await queue.enqueue(TOPIC_PAYMENT_RETRY, {"payment_id": payment_id})
                    stats["dispatched"] += 1
                except QueueError:
                    stats["failed"] += 1
                    logger.exception(f"[DUNNING] Failed to dispatch retry for payment {payment_id}")
                    await self.release_retry(payment_id)

            if len(payments) < limit:
                break

        if stats["dispatched"] or stats["escalated"]:
            logger.info(f"[DUNNING] Retry scan: {stats}")
        return stats

    async def release_retry(self, payment_id: int) -> None:
        """Clear ``retry_in_progress`` so the next scan can pick it up."""
        try:
            async with get_session_context() as session:
                payment = await PaymentRepository(session).get_for_update(payment_id)
                if payment is None:
                    return
                state = self.get_state(payment)
                if state.retry_in_progress:
                    state.retry_in_progress = False
                    self._store(payment, state)
        except Exception:
            logger.exception(f"[DUNNING] Failed to release retry flag on payment {payment_id}")

    # =========================================================================
    # Worker
    # =========================================================================

    async def process_retry(self, payment_id: int) -> str:
        """
        Run one retry attempt for a payment.

        Re-checks state (redelivery safe), re-initiates the charge with the
        gateway outside any unit of work, then records the attempt. A gateway
        error still consumes the attempt. ``retry_in_progress`` is cleared on
        every exit path.

        Returns:
            Outcome label: "retried", "gateway_error", "escalated", "closed"
            (invoice no longer payable) or "skipped"
        """
        released = False
        try:
            outcome: Optional[str] = None
            async with get_session_context() as session:
                payment = await PaymentRepository(session).get_for_update(payment_id)
                if payment is None:
                    logger.warning(f"[DUNNING] Payment {payment_id} not found")
                    outcome = "skipped"
                else:
                    state = self.get_state(payment)
                    invoice: Optional[Invoice] = await InvoiceRepository(session).get_by_id(payment.invoice_id)

                    if payment.status != PaymentStatus.FAILED.value or state.permanently_failed:
                        outcome = "skipped"
                    elif not state.retry_in_progress:
                        logger.info(f"[DUNNING] Payment {payment_id}: retry not claimed (stale job), skipping")
                        outcome = "skipped"
                    elif state.exhausted:
                        await self.escalate(session, payment, self._clock.now())
                        outcome = "escalated"
                    elif invoice is None or invoice.status != InvoiceStatus.PENDING.value:
                        # Nothing left to collect: end the schedule for good
                        logger.info(f"[DUNNING] Payment {payment_id}: invoice no longer payable, closing")
                        await self.escalate(session, payment, self._clock.now())
                        outcome = "closed"

                    if outcome == "skipped":
                        state.retry_in_progress = False
                        self._store(payment, state)
                    elif outcome is None:
                        request = CheckoutRequest(
                            invoice_id=invoice.id,
                            invoice_number=f"{invoice.invoice_number}-R{state.retry_attempts + 1}",
                            user_id=payment.user_id,
                            amount=payment.amount,
                            currency=payment.currency,
                            description=invoice.description or invoice.invoice_number,
                            payment_method=payment.payment_method or "card",
                        )

            if outcome is not None:
                released = True
                return outcome

            session_key = None
            redirect_url = None
            error: Optional[str] = None
            try:
                gateway_session = await self.gateway.initiate(request)
                session_key = gateway_session.session_key
                redirect_url = gateway_session.redirect_url
            except PaymentGatewayError as e:
                error = e.message
                logger.warning(f"[DUNNING] Retry for payment {payment_id} failed at gateway: {e.message}")

            async with get_session_context() as session:
                payment = await PaymentRepository(session).get_for_update(payment_id)
                current = self.get_state(payment)
                if payment.status != PaymentStatus.FAILED.value or not current.retry_in_progress:
                    # Paid meanwhile, or a duplicate delivery already recorded this attempt
                    logger.info(f"[DUNNING] Payment {payment_id} changed during retry, attempt not recorded")
                    released = True
                    return "skipped"
                state = retry_state.record_attempt(current, self._clock.now(), self.delays)
                if error:
                    state.failure_reason = error
                else:
                    payment.transaction_id = session_key
                self._store(payment, state)
                if redirect_url:
                    payment.meta = {**payment.meta, "retry_redirect_url": redirect_url}
            released = True

            logger.info(
                f"[DUNNING] Payment {payment_id} retry attempt {state.retry_attempts}/{state.max_retries}, "
                f"next window {state.next_retry_at}"
            )
            return "gateway_error" if error else "retried"
        finally:
            if not released:
                await self.release_retry(payment_id)


_dunning_service: Optional[DunningService] = None


def get_dunning_service() -> DunningService:
    """Get or create dunning service singleton."""
    global _dunning_service
    if _dunning_service is None:
        _dunning_service = DunningService()
    return _dunning_service
