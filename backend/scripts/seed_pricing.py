#!/usr/bin/env python3
"""
Seed the price catalogue.

Inserts one active row per (tier, billing_cycle) for the given currency and
region unless an active row already exists for that key.

Run: python scripts/seed_pricing.py --currency USD --region GLOBAL
"""

import asyncio
import argparse
from decimal import Decimal

# Add backend to path
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_engine.domain.subscription import BillingCycle, SubscriptionTier
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models import SubscriptionPrice
from billing_engine.infrastructure.db.repositories import PricingRepository
from billing_engine.infrastructure.db.models.base import utc_now


# ============== DEFAULT CATALOGUE ==============
# price, setup_fee
CATALOGUE = {
    SubscriptionTier.GOLD: {
        BillingCycle.MONTHLY: ("9.99", "4.99"),
        BillingCycle.SIX_MONTHLY: ("54.99", "4.99"),
        BillingCycle.YEARLY: ("99.99", "0"),
        BillingCycle.LIFETIME: ("299.00", "0"),
    },
    SubscriptionTier.PLATINUM: {
        BillingCycle.MONTHLY: ("19.99", "4.99"),
        BillingCycle.SIX_MONTHLY: ("109.99", "4.99"),
        BillingCycle.YEARLY: ("199.99", "0"),
        BillingCycle.LIFETIME: ("599.00", "0"),
    },
    SubscriptionTier.DIAMOND: {
        BillingCycle.MONTHLY: ("39.99", "9.99"),
        BillingCycle.SIX_MONTHLY: ("219.99", "9.99"),
        BillingCycle.YEARLY: ("399.99", "0"),
        BillingCycle.LIFETIME: ("1199.00", "0"),
    },
}


async def seed(currency: str, region: str, tax_rate: Decimal) -> int:
    created = 0
    async with get_session_context() as session:
        repo = PricingRepository(session)
        now = utc_now()
        for tier, cycles in CATALOGUE.items():
            for cycle, (price, setup_fee) in cycles.items():
                if await repo.get_active(tier.value, cycle.value, currency, region, now):
                    print(f"  = {tier.value}/{cycle.value} already priced")
                    continue
                await repo.add(
                    SubscriptionPrice(
                        tier=tier.value,
                        billing_cycle=cycle.value,
                        currency=currency,
                        region=region,
                        price=Decimal(price),
                        setup_fee=Decimal(setup_fee),
                        tax_rate=tax_rate,
                    )
                )
                created += 1
                print(f"  + {tier.value}/{cycle.value}: {price} {currency}")
    return created


async def main():
    parser = argparse.ArgumentParser(description="Seed the subscription price catalogue")
    parser.add_argument("--currency", default="USD", help="ISO 4217 currency (default: USD)")
    parser.add_argument("--region", default="GLOBAL", help="Market region (default: GLOBAL)")
    parser.add_argument("--tax-rate", default="0", help="Tax rate as a fraction, e.g. 0.20")
    args = parser.parse_args()

    created = await seed(args.currency.upper(), args.region.upper(), Decimal(args.tax_rate))
    print(f"\nSeeded {created} price rows")


if __name__ == "__main__":
    asyncio.run(main())
