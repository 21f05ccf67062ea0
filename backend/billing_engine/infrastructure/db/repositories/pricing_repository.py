"""
Pricing Repository

Read-only access to the price catalogue.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.infrastructure.db.models.subscription import SubscriptionPrice
from billing_engine.infrastructure.db.repositories.base_repository import BaseRepository


class PricingRepository(BaseRepository[SubscriptionPrice]):
    """Repository for subscription price rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPrice, session)

    def _in_window(self, now: datetime):
        return (
            SubscriptionPrice.active.is_(True),
            or_(SubscriptionPrice.valid_from.is_(None), SubscriptionPrice.valid_from <= now),
            or_(SubscriptionPrice.valid_until.is_(None), SubscriptionPrice.valid_until > now),
        )

    async def get_active(
        self,
        tier: str,
        billing_cycle: str,
        currency: str,
        region: str,
        now: datetime,
    ) -> List[SubscriptionPrice]:
        """
        All active rows for the key, valid at ``now``.

        More than one row is a catalogue integrity problem; the caller decides.
        """
        stmt = (
            select(SubscriptionPrice)
            .where(
                SubscriptionPrice.tier == tier,
                SubscriptionPrice.billing_cycle == billing_cycle,
                SubscriptionPrice.currency == currency,
                SubscriptionPrice.region == region,
                *self._in_window(now),
            )
            .order_by(SubscriptionPrice.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self, now: datetime, currency: Optional[str] = None) -> List[SubscriptionPrice]:
        stmt = select(SubscriptionPrice).where(*self._in_window(now))
        if currency:
            stmt = stmt.where(SubscriptionPrice.currency == currency)
        stmt = stmt.order_by(SubscriptionPrice.tier, SubscriptionPrice.billing_cycle, SubscriptionPrice.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
