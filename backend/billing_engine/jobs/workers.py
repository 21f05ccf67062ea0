"""
Lifecycle Workers

Consumers for the jobs dispatched by the scans. Delivery is at-least-once:
every handler re-checks current state inside its own unit of work before
acting, so redelivered or stale jobs are no-ops.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from billing_engine.config.settings import get_settings
from billing_engine.domain.periods import Clock, SystemClock
from billing_engine.domain.subscription import PurchaseType, SubscriptionStatus
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.repositories import (
    InvoiceRepository,
    SubscriptionRepository,
)
from billing_engine.infrastructure.exceptions import QueueError
from billing_engine.infrastructure.queue.work_queue import (
    TOPIC_EXPIRE_BATCH,
    TOPIC_PAYMENT_RETRY,
    TOPIC_RENEW,
    Job,
    WorkQueue,
    get_work_queue,
)
from billing_engine.infrastructure.services.dunning_service import DunningService
from billing_engine.infrastructure.services.invoice_service import InvoiceService
from billing_engine.infrastructure.services.pricing_service import PricingService
from billing_engine.infrastructure.services.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class LifecycleWorkers:
    """Job handlers for expiry, renewal and payment retry."""

    def __init__(
        self,
        pricing: Optional[PricingService] = None,
        invoices: Optional[InvoiceService] = None,
        dunning: Optional[DunningService] = None,
        reconciliation: Optional[ReconciliationService] = None,
        clock: Optional[Clock] = None,
    ):
        self._clock = clock or SystemClock()
        self._pricing = pricing or PricingService(self._clock)
        self._invoices = invoices or InvoiceService(clock=self._clock)
        self._dunning = dunning or DunningService(clock=self._clock)
        self._reconciliation = reconciliation or ReconciliationService(dunning=self._dunning, clock=self._clock)

    def handlers(self) -> Dict[str, Handler]:
        return {
            TOPIC_EXPIRE_BATCH: lambda payload: self.process_expire_batch(payload["subscription_ids"]),
            TOPIC_RENEW: lambda payload: self.process_renewal(payload["subscription_id"]),
            TOPIC_PAYMENT_RETRY: lambda payload: self.process_payment_retry(payload["payment_id"]),
        }

    def drop_handlers(self) -> Dict[str, Handler]:
        """
        Called when a job is given up on: put back the flag its scan set, so a
        later scan picks the work up again (renewals once their lease runs out).
        """
        return {
            TOPIC_EXPIRE_BATCH: lambda payload: self.release_expiry(payload["subscription_ids"]),
            TOPIC_RENEW: lambda payload: self.release_renewal(payload["subscription_id"]),
            TOPIC_PAYMENT_RETRY: lambda payload: self._dunning.release_retry(payload["payment_id"]),
        }

    async def process_expire_batch(self, subscription_ids: Iterable[int]) -> int:
        """Expire the batch; rows that no longer qualify are left alone."""
        ids: List[int] = list(subscription_ids)
        async with get_session_context() as session:
            return await SubscriptionRepository(session).expire_batch(ids, self._clock.now())

    async def release_expiry(self, subscription_ids: Iterable[int]) -> int:
        ids: List[int] = list(subscription_ids)
        async with get_session_context() as session:
            released = await SubscriptionRepository(session).release_expiry(ids)
        if released:
            logger.warning(f"[WORKER] Released expiry flag on {released} of {len(ids)} subscriptions")
        return released

    async def process_renewal(self, subscription_id: int) -> str:
        """
        Issue the renewal invoice for one leased subscription.

        Skips subscriptions that are no longer ACTIVE or that already have a
        live renewal invoice for the current period. ``renewal_in_progress``
        is cleared on every path.

        Returns:
            "invoiced", "settled" or "skipped"
        """
        released = False
        try:
            async with get_session_context() as session:
                subscription = await SubscriptionRepository(session).get_for_update(subscription_id)
                if subscription is None:
                    logger.warning(f"[WORKER] Renewal: subscription {subscription_id} not found")
                    released = True
                    return "skipped"

                subscription.renewal_in_progress = False
                now = self._clock.now()

                if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.auto_renew:
                    logger.info(f"[WORKER] Renewal: subscription {subscription_id} no longer renewable")
                    outcome = "skipped"
                else:
                    existing = await InvoiceRepository(session).find_live_invoice(
                        subscription.id,
                        PurchaseType.RENEWAL,
                        created_since=subscription.start_date,
                    )
                    if existing is not None:
                        logger.info(
                            f"[WORKER] Renewal: subscription {subscription_id} already has "
                            f"invoice {existing.invoice_number}"
                        )
                        outcome = "skipped"
                    else:
                        price = await self._pricing.require_pricing(
                            session,
                            subscription.tier,
                            subscription.billing_cycle,
                            subscription.currency,
                            subscription.region,
                        )
                        invoice = await self._invoices.generate_subscription_invoice(
                            session, subscription, price, PurchaseType.RENEWAL
                        )
                        if invoice.amount <= 0:
                            await self._reconciliation.apply_paid_invoice(session, invoice, now)
                            outcome = "settled"
                        else:
                            outcome = "invoiced"
                        logger.info(
                            f"[WORKER] Renewal invoice {invoice.invoice_number} for subscription {subscription_id}"
                        )
            released = True
            return outcome
        finally:
            if not released:
                await self.release_renewal(subscription_id)

    async def process_payment_retry(self, payment_id: int) -> str:
        return await self._dunning.process_retry(payment_id)

    async def release_renewal(self, subscription_id: int) -> None:
        try:
            async with get_session_context() as session:
                await SubscriptionRepository(session).reset_flags([subscription_id], renewal_in_progress=False)
        except Exception:
            logger.exception(f"[WORKER] Could not release renewal lease on subscription {subscription_id}")


class WorkerRunner:
    """
    Pull loop over the work queue.

    A job is acked once its handler returns. A failing job is requeued with
    its attempt count bumped until ``max_attempts``; then its drop handler
    (if any) undoes the scan's flag and the job is acked and forgotten.
    Jobs left in flight by a worker that died are put back by ``recover``
    when a runner starts.
    """

    def __init__(
        self,
        handlers: Dict[str, Handler],
        queue: Optional[WorkQueue] = None,
        max_attempts: Optional[int] = None,
        poll_timeout: float = 5.0,
        drop_handlers: Optional[Dict[str, Handler]] = None,
    ):
        self._handlers = handlers
        self._drop_handlers = drop_handlers or {}
        self._queue = queue
        self._max_attempts = max_attempts or get_settings().job_max_attempts
        self._poll_timeout = poll_timeout

    @property
    def queue(self) -> WorkQueue:
        return self._queue or get_work_queue()

    async def recover(self) -> int:
        """
        Requeue jobs stranded in flight on this runner's topics.

        With several workers this can redeliver a job another worker is still
        running; handlers re-check state, so that costs a no-op.
        """
        return await self.queue.recover(list(self._handlers))

    async def run_once(self) -> Optional[Job]:
        """Process at most one job. Returns the job handled, if any."""
        job = await self.queue.dequeue(list(self._handlers), timeout=self._poll_timeout)
        if job is None:
            return None

        handler = self._handlers.get(job.topic)
        if handler is None:
            logger.error(f"[WORKER] No handler for topic {job.topic}, dropping job {job.job_id}")
            await self.queue.ack(job)
            return job

        try:
            result = await handler(job.payload)
        except Exception:
            job.attempts += 1
            if job.attempts < self._max_attempts:
                logger.exception(
                    f"[WORKER] {job.topic} job {job.job_id} failed "
                    f"(attempt {job.attempts}/{self._max_attempts}), requeueing"
                )
                await self.queue.requeue(job)
            else:
                logger.exception(f"[WORKER] {job.topic} job {job.job_id} failed permanently, dropping")
                await self._drop(job)
            return job

        logger.debug(f"[WORKER] {job.topic} {job.job_id} -> {result}")
        await self.queue.ack(job)
        return job

    async def _drop(self, job: Job) -> None:
        on_drop = self._drop_handlers.get(job.topic)
        if on_drop is not None:
            try:
                await on_drop(job.payload)
            except Exception:
                logger.exception(f"[WORKER] Drop handler for {job.topic} job {job.job_id} failed")
        await self.queue.ack(job)

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(f"[WORKER] Consuming {', '.join(self._handlers)}")
        try:
            recovered = await self.recover()
            if recovered:
                logger.warning(f"[WORKER] Requeued {recovered} jobs left in flight")
        except QueueError:
            logger.exception("[WORKER] Could not recover in-flight jobs")

        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("[WORKER] Queue error, backing off")
                await asyncio.sleep(self._poll_timeout)
        logger.info("[WORKER] Stopped")
