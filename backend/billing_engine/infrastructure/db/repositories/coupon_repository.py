"""
Coupon Repository

Lookup of coupons by their normalized code.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.infrastructure.db.models.coupon import Coupon
from billing_engine.infrastructure.db.repositories.base_repository import BaseRepository


def normalize_code(code: str) -> str:
    return code.strip().upper()


class CouponRepository(BaseRepository[Coupon]):
    """Repository for coupon rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(Coupon, session)

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        stmt = select(Coupon).where(Coupon.code == normalize_code(code))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
