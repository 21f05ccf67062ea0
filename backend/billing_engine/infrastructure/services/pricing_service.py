"""
Pricing Service

Resolves the single active price row for (tier, billing cycle, currency,
region). Absence is a hard error for every billing path; there is no
fallback to another currency, region or cycle.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config.settings import get_settings
from billing_engine.domain.periods import Clock, SystemClock
from billing_engine.domain.subscription import (
    BillingCycle,
    PlanPrice,
    SubscriptionTier,
)
from billing_engine.infrastructure.db.models.subscription import SubscriptionPrice
from billing_engine.infrastructure.db.repositories import PricingRepository
from billing_engine.infrastructure.exceptions import DatabaseError, PricingNotFoundError


logger = logging.getLogger(__name__)


class PricingService:
    """Price catalogue lookups."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._settings = get_settings()

    def _key(self, currency: Optional[str], region: Optional[str]) -> tuple[str, str]:
        currency = (currency or self._settings.default_currency).strip().upper()
        region = (region or self._settings.default_region).strip().upper()
        return currency, region

    async def get_pricing(
        self,
        session: AsyncSession,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        currency: Optional[str] = None,
        region: Optional[str] = None,
    ) -> Optional[SubscriptionPrice]:
        """
        Get the active price row for a plan.

        Args:
            session: Unit of work
            tier: Subscription tier
            billing_cycle: Billing cycle
            currency: ISO currency (defaults to DEFAULT_CURRENCY)
            region: Market (defaults to DEFAULT_REGION)

        Returns:
            The price row, or None when the plan is not sold in that market

        Raises:
            DatabaseError: More than one active row matches the key
        """
        currency, region = self._key(currency, region)
        rows = await PricingRepository(session).get_active(
            SubscriptionTier(tier).value,
            BillingCycle(billing_cycle).value,
            currency,
            region,
            self._clock.now(),
        )

        if len(rows) > 1:
            logger.error(
                f"Catalogue integrity violation: {len(rows)} active prices for "
                f"{tier}/{billing_cycle}/{currency}/{region}"
            )
            raise DatabaseError(
                "Multiple active prices for one plan key",
                operation="get_pricing",
                table="subscription_prices",
            )

        return rows[0] if rows else None

    async def require_pricing(
        self,
        session: AsyncSession,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        currency: Optional[str] = None,
        region: Optional[str] = None,
    ) -> SubscriptionPrice:
        """Same as get_pricing but raises PricingNotFoundError on absence."""
        price = await self.get_pricing(session, tier, billing_cycle, currency, region)
        if price is None:
            currency, region = self._key(currency, region)
            raise PricingNotFoundError(
                SubscriptionTier(tier).value,
                BillingCycle(billing_cycle).value,
                currency,
                region,
            )
        return price

    async def list_plans(
        self,
        session: AsyncSession,
        currency: Optional[str] = None,
    ) -> Dict[SubscriptionTier, List[PlanPrice]]:
        """Active plans grouped by tier, for the pricing page."""
        rows = await PricingRepository(session).list_active(
            self._clock.now(),
            currency.strip().upper() if currency else None,
        )

        plans: Dict[SubscriptionTier, List[PlanPrice]] = {tier: [] for tier in SubscriptionTier}
        for row in rows:
            plans[SubscriptionTier(row.tier)].append(PlanPrice.model_validate(row))
        return {tier: prices for tier, prices in plans.items() if prices}


# =============================================================================
# Singleton Instance
# =============================================================================

_pricing_service: Optional[PricingService] = None


def get_pricing_service() -> PricingService:
    """Get or create pricing service singleton."""
    global _pricing_service
    if _pricing_service is None:
        _pricing_service = PricingService()
    return _pricing_service
