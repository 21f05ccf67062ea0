"""
Lifecycle Scans

Periodic discovery of subscriptions that need action.

Every scan pages the store by ascending id in fixed-size batches. Scans that
dispatch work follow flag-then-dispatch: matched rows are flagged in the
same unit of work that selected them, the flags are committed, and only then
are jobs enqueued. A dispatch failure resets the flags of what it could not
dispatch. Already-flagged rows are excluded by the WHERE clause rather than
by cursor position, so a scan that crashed half-way resumes cleanly on the
next tick and two overlapping ticks never dispatch the same row twice.
"""

import logging
from typing import Dict, List, Optional

from billing_engine.config.settings import get_settings
from billing_engine.domain.periods import (
    Clock,
    SystemClock,
    add_days,
    add_hours,
    calculate_end_date,
)
from billing_engine.domain.subscription import (
    BillingCycle,
    PurchaseType,
    SubscriptionStatus,
)
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.repositories import (
    InvoiceRepository,
    SubscriptionRepository,
)
from billing_engine.infrastructure.exceptions import QueueError
from billing_engine.infrastructure.queue.work_queue import (
    TOPIC_EXPIRE_BATCH,
    TOPIC_EXPIRY_REMINDER,
    TOPIC_RENEW,
    WorkQueue,
    get_work_queue,
)
from billing_engine.infrastructure.services.dunning_service import DunningService
from billing_engine.infrastructure.services.invoice_service import InvoiceService
from billing_engine.infrastructure.services.pricing_service import PricingService
from billing_engine.infrastructure.services.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)


class LifecycleScans:
    """The periodic scans. Each public ``scan_*`` method is one tick."""

    def __init__(
        self,
        queue: Optional[WorkQueue] = None,
        pricing: Optional[PricingService] = None,
        invoices: Optional[InvoiceService] = None,
        dunning: Optional[DunningService] = None,
        reconciliation: Optional[ReconciliationService] = None,
        clock: Optional[Clock] = None,
    ):
        self._clock = clock or SystemClock()
        self._queue = queue
        self._pricing = pricing or PricingService(self._clock)
        self._invoices = invoices or InvoiceService(clock=self._clock)
        self._dunning = dunning or DunningService(clock=self._clock)
        self._reconciliation = reconciliation or ReconciliationService(dunning=self._dunning, clock=self._clock)
        self._settings = get_settings()

    @property
    def queue(self) -> WorkQueue:
        return self._queue or get_work_queue()

    @property
    def batch_size(self) -> int:
        return self._settings.scan_batch_size

    # =========================================================================
    # Expiry
    # =========================================================================

    async def scan_expired_subscriptions(self) -> Dict[str, int]:
        """
        Flag ACTIVE subscriptions past their end date and dispatch one
        expire-batch job per page.
        """
        now = self._clock.now()
        stats = {"flagged": 0, "dispatched": 0, "failed": 0}
        after_id = 0

        while True:
            async with get_session_context() as session:
                rows = await SubscriptionRepository(session).select_expired(now, after_id, self.batch_size)
                for subscription in rows:
                    subscription.expiry_processed = True
                await session.flush()

            if not rows:
                break

            ids = [subscription.id for subscription in rows]
            stats["flagged"] += len(ids)
            after_id = ids[-1]

            try:
                await self.queue.enqueue(TOPIC_EXPIRE_BATCH, {"subscription_ids": ids})
                stats["dispatched"] += len(ids)
            except QueueError:
                stats["failed"] += len(ids)
                logger.exception(f"[SCAN] Expiry dispatch failed for {len(ids)} subscriptions")
                await self._reset(ids, expiry_processed=False)

            if len(rows) < self.batch_size:
                break

        if stats["flagged"]:
            logger.info(f"[SCAN] Expiry scan: {stats}")
        return stats

    # =========================================================================
    # Renewal
    # =========================================================================

    async def scan_renewals(self) -> Dict[str, int]:
        """
        Lease auto-renewing subscriptions close to their end date and
        dispatch one renewal job per subscription.

        A lease older than RENEWAL_LEASE_HOURS whose flag is still set was
        abandoned by its worker and is taken over.
        """
        now = self._clock.now()
        window_end = add_days(now, self._settings.renewal_window_days)
        lease_cutoff = add_hours(now, -self._settings.renewal_lease_hours)
        stats = {"flagged": 0, "reclaimed": 0, "dispatched": 0, "failed": 0}
        after_id = 0

        while True:
            async with get_session_context() as session:
                rows = await SubscriptionRepository(session).select_renewal_candidates(
                    now, window_end, lease_cutoff, after_id, self.batch_size
                )
                for subscription in rows:
                    if subscription.renewal_in_progress:
                        logger.warning(
                            f"[SCAN] Renewal lease on subscription {subscription.id} from "
                            f"{subscription.last_renewal_attempt} lapsed, taking over"
                        )
                        stats["reclaimed"] += 1
                    subscription.renewal_in_progress = True
                    subscription.last_renewal_attempt = now
                await session.flush()

            if not rows:
                break

            stats["flagged"] += len(rows)
            after_id = rows[-1].id

            for subscription in rows:
                try:
                    await self.queue.enqueue(TOPIC_RENEW, {"subscription_id": subscription.id})
                    stats["dispatched"] += 1
                except QueueError:
                    stats["failed"] += 1
                    logger.exception(f"[SCAN] Renewal dispatch failed for subscription {subscription.id}")
                    await self._reset([subscription.id], renewal_in_progress=False, last_renewal_attempt=None)

            if len(rows) < self.batch_size:
                break

        if stats["flagged"]:
            logger.info(f"[SCAN] Renewal scan: {stats}")
        return stats

    # =========================================================================
    # Trial Conversion
    # =========================================================================

    async def scan_trial_conversions(self) -> Dict[str, int]:
        """
        Bill subscriptions whose trial ended.

        Each subscription is converted in its own unit of work that re-checks
        the trial under a row lock and skips it when a live conversion
        invoice already exists.
        """
        stats = {"scanned": 0, "converted": 0, "skipped": 0, "failed": 0}
        after_id = 0

        while True:
            async with get_session_context() as session:
                rows = await SubscriptionRepository(session).select_trials_ended(
                    self._clock.now(), after_id, self.batch_size
                )
            if not rows:
                break

            stats["scanned"] += len(rows)
            after_id = rows[-1].id

            for subscription in rows:
                try:
                    if await self.convert_trial(subscription.id):
                        stats["converted"] += 1
                    else:
                        stats["skipped"] += 1
                except Exception:
                    stats["failed"] += 1
                    logger.exception(f"[SCAN] Trial conversion failed for subscription {subscription.id}")

            if len(rows) < self.batch_size:
                break

        if stats["scanned"]:
            logger.info(f"[SCAN] Trial conversion scan: {stats}")
        return stats

    async def convert_trial(self, subscription_id: int) -> bool:
        """Convert one ended trial into a PENDING paid period. Returns True if converted."""
        async with get_session_context() as session:
            subscription = await SubscriptionRepository(session).get_for_update(subscription_id)
            now = self._clock.now()
            if (
                subscription is None
                or subscription.status != SubscriptionStatus.ACTIVE.value
                or subscription.trial_end is None
                or subscription.trial_end > now
            ):
                return False

            existing = await InvoiceRepository(session).find_live_invoice(
                subscription.id, PurchaseType.TRIAL_CONVERSION
            )
            if existing is not None:
                logger.info(
                    f"[SCAN] Subscription {subscription.id} already has conversion invoice "
                    f"{existing.invoice_number}"
                )
                return False

            price = await self._pricing.require_pricing(
                session,
                subscription.tier,
                subscription.billing_cycle,
                subscription.currency,
                subscription.region,
            )

            subscription.start_date = now
            subscription.end_date = calculate_end_date(now, BillingCycle(subscription.billing_cycle))
            subscription.trial_end = None
            subscription.status = SubscriptionStatus.PENDING.value
            subscription.expiry_processed = False

            invoice = await self._invoices.generate_subscription_invoice(
                session, subscription, price, PurchaseType.TRIAL_CONVERSION
            )
            if invoice.amount <= 0:
                await self._reconciliation.apply_paid_invoice(session, invoice, now)

            logger.info(f"[SCAN] Trial ended for subscription {subscription.id}: invoice {invoice.invoice_number}")
            return True

    # =========================================================================
    # Reminders
    # =========================================================================

    async def scan_expiry_reminders(self) -> Dict[str, int]:
        """
        Stamp and dispatch reminders for non-renewing subscriptions that end
        within the reminder window. Delivery is the mailer's job.
        """
        now = self._clock.now()
        window_end = add_days(now, self._settings.reminder_window_days)
        stats = {"flagged": 0, "dispatched": 0, "failed": 0}
        after_id = 0

        while True:
            async with get_session_context() as session:
                rows = await SubscriptionRepository(session).select_reminder_candidates(
                    now, window_end, after_id, self.batch_size
                )
                for subscription in rows:
                    subscription.reminder_sent_at = now
                await session.flush()

            if not rows:
                break

            stats["flagged"] += len(rows)
            after_id = rows[-1].id

            for subscription in rows:
                payload = {
                    "subscription_id": subscription.id,
                    "user_id": subscription.user_id,
                    "tier": subscription.tier,
                    "end_date": subscription.end_date.isoformat(),
                }
                try:
                    await self.queue.enqueue(TOPIC_EXPIRY_REMINDER, payload)
                    stats["dispatched"] += 1
                except QueueError:
                    stats["failed"] += 1
                    logger.exception(f"[SCAN] Reminder dispatch failed for subscription {subscription.id}")
                    await self._reset([subscription.id], reminder_sent_at=None)

            if len(rows) < self.batch_size:
                break

        if stats["flagged"]:
            logger.info(f"[SCAN] Reminder scan: {stats}")
        return stats

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def scan_orphaned_subscriptions(self) -> Dict[str, int]:
        """Expire abandoned PENDING checkouts."""
        cutoff = add_days(self._clock.now(), -self._settings.orphan_pending_days)
        stats = {"expired": 0}
        after_id = 0

        while True:
            async with get_session_context() as session:
                rows = await SubscriptionRepository(session).select_orphaned(cutoff, after_id, self.batch_size)
                for subscription in rows:
                    subscription.status = SubscriptionStatus.EXPIRED.value
                await session.flush()

            if not rows:
                break

            stats["expired"] += len(rows)
            after_id = rows[-1].id
            if len(rows) < self.batch_size:
                break

        if stats["expired"]:
            logger.info(f"[SCAN] Expired {stats['expired']} orphaned subscriptions")
        return stats

    async def cancel_stale_invoices(self) -> Dict[str, int]:
        return await self._invoices.cancel_stale_invoices()

    async def scan_payment_retries(self) -> Dict[str, int]:
        return await self._dunning.scan_payment_retries(self.queue)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _reset(self, subscription_ids: List[int], **flags) -> None:
        """Undo flags after a failed dispatch; failures here are logged only."""
        try:
            async with get_session_context() as session:
                await SubscriptionRepository(session).reset_flags(subscription_ids, **flags)
        except Exception:
            logger.exception(f"[SCAN] Could not reset {flags} on subscriptions {subscription_ids}")
