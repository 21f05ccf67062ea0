"""
Integration tests for the periodic scans and the workers they feed.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from billing_engine.domain.subscription import (
    BillingCycle,
    InvoiceStatus,
    PurchaseType,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models import Invoice, Subscription, SubscriptionPrice
from billing_engine.infrastructure.exceptions import PricingNotFoundError, QueueError
from billing_engine.infrastructure.queue.work_queue import (
    TOPIC_EXPIRE_BATCH,
    TOPIC_EXPIRY_REMINDER,
    TOPIC_RENEW,
)
from billing_engine.jobs import LifecycleScans
from billing_engine.jobs.workers import WorkerRunner

from conftest import START, load, purchase_and_pay, update_row


PERIOD_END = START + timedelta(days=30)


async def latest_invoice(subscription_id: int) -> Invoice:
    async with get_session_context() as session:
        result = await session.execute(
            select(Invoice).where(Invoice.subscription_id == subscription_id).order_by(Invoice.id.desc())
        )
        return result.scalars().first()


@pytest.fixture
def broken_queue():
    queue = MagicMock()
    queue.enqueue = AsyncMock(side_effect=QueueError("queue down", topic="any"))
    return queue


@pytest.fixture
def broken_scans(broken_queue, pricing, invoices, dunning, reconciliation, clock):
    return LifecycleScans(broken_queue, pricing, invoices, dunning, reconciliation, clock)


@pytest.fixture
async def paid(catalogue, subscriptions, reconciliation):
    """An ACTIVE GOLD monthly subscription for user 1, period June 1 to July 1."""
    result, _ = await purchase_and_pay(subscriptions, reconciliation, 1)
    return result.subscription


class TestExpiryScan:
    async def test_expired_subscription_is_dispatched_then_expired(self, paid, scans, workers, queue, clock):
        clock.set(PERIOD_END + timedelta(hours=1))

        stats = await scans.scan_expired_subscriptions()

        assert stats == {"flagged": 1, "dispatched": 1, "failed": 0}
        [job] = queue.pending(TOPIC_EXPIRE_BATCH)
        assert job.payload == {"subscription_ids": [paid.id]}
        assert (await load(Subscription, paid.id)).expiry_processed is True

        assert await workers.process_expire_batch(job.payload["subscription_ids"]) == 1
        assert (await load(Subscription, paid.id)).status == SubscriptionStatus.EXPIRED.value

    async def test_flagged_rows_are_not_dispatched_twice(self, paid, scans, queue, clock):
        clock.set(PERIOD_END + timedelta(hours=1))

        await scans.scan_expired_subscriptions()
        again = await scans.scan_expired_subscriptions()

        assert again["flagged"] == 0
        assert len(queue.pending(TOPIC_EXPIRE_BATCH)) == 1

    async def test_subscription_still_in_period_is_left_alone(self, paid, scans, clock):
        clock.set(PERIOD_END - timedelta(hours=1))

        stats = await scans.scan_expired_subscriptions()

        assert stats["flagged"] == 0

    async def test_dispatch_failure_resets_flag(self, paid, broken_scans, clock):
        clock.set(PERIOD_END + timedelta(hours=1))

        stats = await broken_scans.scan_expired_subscriptions()

        assert stats == {"flagged": 1, "dispatched": 0, "failed": 1}
        subscription = await load(Subscription, paid.id)
        assert subscription.expiry_processed is False
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    async def test_worker_rechecks_eligibility(self, paid, workers, clock):
        clock.set(PERIOD_END - timedelta(hours=1))

        assert await workers.process_expire_batch([paid.id]) == 0
        assert (await load(Subscription, paid.id)).status == SubscriptionStatus.ACTIVE.value

    async def test_dropped_batch_is_released_for_the_next_scan(self, paid, scans, workers, queue, clock):
        clock.set(PERIOD_END + timedelta(hours=1))
        await scans.scan_expired_subscriptions()
        runner = WorkerRunner(
            {TOPIC_EXPIRE_BATCH: AsyncMock(side_effect=RuntimeError("db down"))},
            queue=queue,
            max_attempts=1,
            poll_timeout=0.01,
            drop_handlers=workers.drop_handlers(),
        )

        await runner.run_once()

        assert queue.pending(TOPIC_EXPIRE_BATCH) == []
        assert (await load(Subscription, paid.id)).expiry_processed is False
        assert (await scans.scan_expired_subscriptions())["flagged"] == 1

    async def test_batch_left_in_flight_is_recovered(self, paid, scans, workers, queue, clock):
        clock.set(PERIOD_END + timedelta(hours=1))
        await scans.scan_expired_subscriptions()
        # Worker takes the batch and dies before acking
        await queue.dequeue([TOPIC_EXPIRE_BATCH], timeout=0.01)

        runner = WorkerRunner(workers.handlers(), queue=queue, poll_timeout=0.01)
        assert await runner.recover() == 1
        await runner.run_once()

        assert (await load(Subscription, paid.id)).status == SubscriptionStatus.EXPIRED.value
        assert queue.in_flight(TOPIC_EXPIRE_BATCH) == []


class TestRenewalScan:
    async def test_renewal_is_leased_invoiced_and_paid(self, paid, scans, workers, queue, reconciliation, clock):
        clock.set(PERIOD_END - timedelta(days=2))

        stats = await scans.scan_renewals()

        assert stats == {"flagged": 1, "reclaimed": 0, "dispatched": 1, "failed": 0}
        [job] = queue.pending(TOPIC_RENEW)
        assert job.payload == {"subscription_id": paid.id}

        assert await workers.process_renewal(paid.id) == "invoiced"
        renewal = await latest_invoice(paid.id)
        assert renewal.purchase_type == PurchaseType.RENEWAL.value
        assert renewal.amount == Decimal("30.00")

        subscription = await load(Subscription, paid.id)
        assert subscription.renewal_in_progress is False
        assert subscription.last_renewal_attempt == clock.now()

        initiated = await reconciliation.initiate_payment(renewal.id, 1)
        await reconciliation.handle_payment_success(initiated.payment.transaction_id)

        renewed = await load(Subscription, paid.id)
        assert renewed.status == SubscriptionStatus.ACTIVE.value
        assert renewed.start_date == PERIOD_END
        assert renewed.end_date == START + timedelta(days=61)

    async def test_lease_blocks_immediate_rescan(self, paid, scans, workers, clock):
        clock.set(PERIOD_END - timedelta(days=2))
        await scans.scan_renewals()
        await workers.process_renewal(paid.id)

        clock.advance(hours=1)
        assert (await scans.scan_renewals())["flagged"] == 0

    async def test_existing_renewal_invoice_is_not_duplicated(self, paid, scans, workers, clock):
        clock.set(PERIOD_END - timedelta(days=2))
        await scans.scan_renewals()
        await workers.process_renewal(paid.id)

        clock.advance(hours=7)
        assert (await scans.scan_renewals())["flagged"] == 1
        assert await workers.process_renewal(paid.id) == "skipped"

    async def test_outside_window_or_not_renewing(self, paid, scans, clock):
        clock.set(PERIOD_END - timedelta(days=5))
        assert (await scans.scan_renewals())["flagged"] == 0

        await update_row(Subscription, paid.id, auto_renew=False)
        clock.set(PERIOD_END - timedelta(days=1))
        assert (await scans.scan_renewals())["flagged"] == 0

    async def test_dispatch_failure_releases_lease(self, paid, broken_scans, clock):
        clock.set(PERIOD_END - timedelta(days=2))

        stats = await broken_scans.scan_renewals()

        assert stats == {"flagged": 1, "reclaimed": 0, "dispatched": 0, "failed": 1}
        assert (await load(Subscription, paid.id)).renewal_in_progress is False

    async def test_missing_price_fails_job_and_releases_lease(self, paid, scans, workers, clock):
        await update_row(SubscriptionPrice, 1, active=False)
        clock.set(PERIOD_END - timedelta(days=2))
        await scans.scan_renewals()

        with pytest.raises(PricingNotFoundError):
            await workers.process_renewal(paid.id)

        subscription = await load(Subscription, paid.id)
        assert subscription.renewal_in_progress is False
        assert (await latest_invoice(paid.id)).purchase_type == PurchaseType.NEW.value

    async def test_cancelled_subscription_is_skipped(self, paid, scans, workers, subscriptions, clock):
        clock.set(PERIOD_END - timedelta(days=2))
        await scans.scan_renewals()
        await subscriptions.cancel_subscription(paid.id, 1)

        assert await workers.process_renewal(paid.id) == "skipped"

    async def test_abandoned_lease_is_reclaimed(self, paid, scans, workers, queue, clock):
        clock.set(PERIOD_END - timedelta(days=2))
        await scans.scan_renewals()
        # Worker takes the job and dies; the flag stays set
        await queue.dequeue([TOPIC_RENEW], timeout=0.01)

        clock.advance(hours=5)
        assert (await scans.scan_renewals())["flagged"] == 0

        clock.advance(hours=2)
        stats = await scans.scan_renewals()

        assert stats == {"flagged": 1, "reclaimed": 1, "dispatched": 1, "failed": 0}
        assert await workers.process_renewal(paid.id) == "invoiced"

    async def test_dispatch_failure_allows_immediate_rescan(self, paid, broken_scans, scans, clock):
        clock.set(PERIOD_END - timedelta(days=2))
        await broken_scans.scan_renewals()

        assert (await load(Subscription, paid.id)).last_renewal_attempt is None
        assert (await scans.scan_renewals())["dispatched"] == 1

    async def test_dropped_renewal_releases_flag(self, paid, scans, workers, queue, clock):
        clock.set(PERIOD_END - timedelta(days=2))
        await scans.scan_renewals()
        runner = WorkerRunner(
            {TOPIC_RENEW: AsyncMock(side_effect=RuntimeError("db down"))},
            queue=queue,
            max_attempts=1,
            poll_timeout=0.01,
            drop_handlers=workers.drop_handlers(),
        )

        await runner.run_once()

        assert (await load(Subscription, paid.id)).renewal_in_progress is False
        clock.advance(hours=7)
        assert (await scans.scan_renewals()) == {"flagged": 1, "reclaimed": 0, "dispatched": 1, "failed": 0}


class TestTrialConversion:
    async def test_ended_trial_is_billed(self, catalogue, subscriptions, scans, clock):
        result = await subscriptions.create_subscription(
            1, SubscriptionTier.GOLD, BillingCycle.MONTHLY, trial_days=14
        )
        assert result.subscription.status == SubscriptionStatus.ACTIVE

        clock.advance(days=13)
        assert (await scans.scan_trial_conversions())["scanned"] == 0

        clock.advance(days=1)
        stats = await scans.scan_trial_conversions()

        assert stats == {"scanned": 1, "converted": 1, "skipped": 0, "failed": 0}
        subscription = await load(Subscription, result.subscription.id)
        assert subscription.status == SubscriptionStatus.PENDING.value
        assert subscription.trial_end is None
        assert subscription.start_date == clock.now()
        assert subscription.end_date == clock.now() + timedelta(days=30)

        invoice = await latest_invoice(result.subscription.id)
        assert invoice.purchase_type == PurchaseType.TRIAL_CONVERSION.value
        assert invoice.amount == Decimal("30.00")

        assert (await scans.scan_trial_conversions())["scanned"] == 0

    async def test_trial_is_not_picked_up_by_renewals(self, catalogue, subscriptions, scans, clock):
        result = await subscriptions.create_subscription(
            1, SubscriptionTier.GOLD, BillingCycle.MONTHLY, trial_days=3
        )
        await update_row(Subscription, result.subscription.id, end_date=START + timedelta(days=2))
        clock.advance(days=1)

        assert (await scans.scan_renewals())["flagged"] == 0


class TestReminders:
    async def test_non_renewing_subscription_gets_one_reminder(self, paid, scans, queue, clock):
        await update_row(Subscription, paid.id, auto_renew=False)
        clock.set(PERIOD_END - timedelta(days=5))

        stats = await scans.scan_expiry_reminders()

        assert stats == {"flagged": 1, "dispatched": 1, "failed": 0}
        [job] = queue.pending(TOPIC_EXPIRY_REMINDER)
        assert job.payload["subscription_id"] == paid.id
        assert job.payload["user_id"] == 1
        assert job.payload["tier"] == SubscriptionTier.GOLD.value
        assert (await load(Subscription, paid.id)).reminder_sent_at == clock.now()

        assert (await scans.scan_expiry_reminders())["flagged"] == 0

    async def test_auto_renewing_subscription_is_not_reminded(self, paid, scans, clock):
        clock.set(PERIOD_END - timedelta(days=5))

        assert (await scans.scan_expiry_reminders())["flagged"] == 0

    async def test_dispatch_failure_clears_stamp(self, paid, broken_scans, clock):
        await update_row(Subscription, paid.id, auto_renew=False)
        clock.set(PERIOD_END - timedelta(days=5))

        stats = await broken_scans.scan_expiry_reminders()

        assert stats["failed"] == 1
        assert (await load(Subscription, paid.id)).reminder_sent_at is None


class TestCleanup:
    async def test_stale_invoice_then_orphaned_subscription(self, catalogue, subscriptions, scans, clock):
        result = await subscriptions.create_subscription(1, SubscriptionTier.GOLD, BillingCycle.MONTHLY)

        clock.advance(days=6)
        assert (await scans.cancel_stale_invoices())["cancelled"] == 0
        assert (await scans.scan_orphaned_subscriptions())["expired"] == 0

        clock.advance(days=2)
        assert await scans.cancel_stale_invoices() == {"scanned": 1, "cancelled": 1}
        invoice = await load(Invoice, result.invoice.id)
        assert invoice.status == InvoiceStatus.CANCELLED.value
        assert invoice.notes.startswith("Automatically cancelled")

        assert await scans.scan_orphaned_subscriptions() == {"expired": 1}
        assert (await load(Subscription, result.subscription.id)).status == SubscriptionStatus.EXPIRED.value

    async def test_pending_subscription_with_live_invoice_is_kept(self, catalogue, subscriptions, scans, clock):
        result = await subscriptions.create_subscription(1, SubscriptionTier.GOLD, BillingCycle.MONTHLY)
        clock.advance(days=8)

        assert await scans.scan_orphaned_subscriptions() == {"expired": 0}
        assert (await load(Subscription, result.subscription.id)).status == SubscriptionStatus.PENDING.value
