"""
Subscription Repository

Data access layer for subscriptions, including the cursor-paginated
selections used by the lifecycle scans.

Scan selections lock their rows with ``FOR UPDATE SKIP LOCKED`` so that two
overlapping ticks never flag the same row; the flag predicates in each WHERE
clause keep re-selection impossible once the flag is committed.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.domain.subscription import (
    COUNTED_SUBSCRIPTION_STATUSES,
    DEAD_INVOICE_STATUSES,
    OPEN_SUBSCRIPTION_STATUSES,
    SubscriptionStatus,
)
from billing_engine.infrastructure.db.models.invoice import Invoice
from billing_engine.infrastructure.db.models.subscription import Subscription
from billing_engine.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


def _values(statuses: Sequence) -> List[str]:
    return [status.value for status in statuses]


class SubscriptionRepository(BaseRepository[Subscription]):
    """Repository for subscription rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_open_for_user(self, user_id: int, for_update: bool = False) -> Optional[Subscription]:
        """
        Get the user's PENDING or ACTIVE subscription, if any.

        Args:
            user_id: User reference
            for_update: Lock the row for the rest of the unit of work

        Returns:
            Subscription or None
        """
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(_values(OPEN_SUBSCRIPTION_STATUSES)),
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def count_for_user(
        self,
        user_id: int,
        exclude_subscription_id: Optional[int] = None,
    ) -> int:
        """Count the user's subscriptions that make the setup fee already paid."""
        stmt = select(func.count()).select_from(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(_values(COUNTED_SUBSCRIPTION_STATUSES)),
        )
        if exclude_subscription_id is not None:
            stmt = stmt.where(Subscription.id != exclude_subscription_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def get_for_user(self, subscription_id: int, user_id: int) -> Optional[Subscription]:
        """Get a subscription only if it belongs to ``user_id`` (row locked)."""
        stmt = (
            select(Subscription)
            .where(Subscription.id == subscription_id, Subscription.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    # =========================================================================
    # Scan Selections (ascending id cursor, bounded batch)
    # =========================================================================

    async def _scan(self, *criteria, after_id: int, limit: int) -> List[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.id > after_id, *criteria)
            .order_by(Subscription.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def select_expired(self, now: datetime, after_id: int, limit: int) -> List[Subscription]:
        """ACTIVE subscriptions past end_date not yet handed to the expiry worker."""
        return await self._scan(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.end_date < now,
            Subscription.expiry_processed.is_(False),
            after_id=after_id,
            limit=limit,
        )

    async def select_renewal_candidates(
        self,
        now: datetime,
        window_end: datetime,
        lease_cutoff: datetime,
        after_id: int,
        limit: int,
    ) -> List[Subscription]:
        """
        Auto-renewing ACTIVE subscriptions ending within the renewal window.

        The lease is ``last_renewal_attempt``: a row leased after
        ``lease_cutoff`` is skipped whether or not its worker finished, and a
        row still flagged ``renewal_in_progress`` past the cutoff was left by
        a worker that died, so it is selected again.

        Subscriptions still in a trial are billed by the trial conversion
        scan instead.
        """
        return await self._scan(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.auto_renew.is_(True),
            Subscription.trial_end.is_(None),
            Subscription.end_date >= now,
            Subscription.end_date <= window_end,
            or_(
                Subscription.last_renewal_attempt.is_(None),
                Subscription.last_renewal_attempt < lease_cutoff,
            ),
            after_id=after_id,
            limit=limit,
        )

    async def select_trials_ended(self, now: datetime, after_id: int, limit: int) -> List[Subscription]:
        """ACTIVE subscriptions whose free trial is over."""
        return await self._scan(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.trial_end.is_not(None),
            Subscription.trial_end <= now,
            after_id=after_id,
            limit=limit,
        )

    async def select_reminder_candidates(
        self,
        now: datetime,
        window_end: datetime,
        after_id: int,
        limit: int,
    ) -> List[Subscription]:
        """Non-renewing ACTIVE subscriptions expiring soon, not yet reminded."""
        return await self._scan(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.auto_renew.is_(False),
            Subscription.end_date >= now,
            Subscription.end_date <= window_end,
            Subscription.reminder_sent_at.is_(None),
            after_id=after_id,
            limit=limit,
        )

    async def select_orphaned(self, created_before: datetime, after_id: int, limit: int) -> List[Subscription]:
        """
        Abandoned checkouts: PENDING, old, and with no invoice that could
        still be paid.
        """
        live_invoice = exists().where(
            and_(
                Invoice.subscription_id == Subscription.id,
                Invoice.status.not_in(_values(DEAD_INVOICE_STATUSES)),
            )
        )
        return await self._scan(
            Subscription.status == SubscriptionStatus.PENDING.value,
            Subscription.created_at < created_before,
            ~live_invoice,
            after_id=after_id,
            limit=limit,
        )

    # =========================================================================
    # Bulk Commands
    # =========================================================================

    async def expire_batch(self, subscription_ids: Sequence[int], now: datetime) -> int:
        """
        Flip the given subscriptions to EXPIRED, re-checking they still qualify.

        Returns:
            Number of rows changed
        """
        if not subscription_ids:
            return 0
        stmt = (
            update(Subscription)
            .where(
                Subscription.id.in_(list(subscription_ids)),
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date < now,
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        logger.info(f"Expired {result.rowcount} of {len(subscription_ids)} subscriptions")
        return result.rowcount

    async def release_expiry(self, subscription_ids: Sequence[int]) -> int:
        """Clear ``expiry_processed`` on rows of a batch that were not expired."""
        if not subscription_ids:
            return 0
        stmt = (
            update(Subscription)
            .where(
                Subscription.id.in_(list(subscription_ids)),
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.expiry_processed.is_(True),
            )
            .values(expiry_processed=False)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def reset_flags(self, subscription_ids: Sequence[int], **flags) -> None:
        """Put scan flags back after a failed dispatch."""
        if not subscription_ids:
            return
        stmt = (
            update(Subscription)
            .where(Subscription.id.in_(list(subscription_ids)))
            .values(**flags)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
