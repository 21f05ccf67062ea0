"""
Coupon Service

Validates coupons against live usage. Business-rule failures never raise:
``None`` means "not applicable" and the caller simply bills without a
discount.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.domain.coupons import CouponContext, rejection_reason
from billing_engine.domain.periods import Clock, SystemClock
from billing_engine.infrastructure.db.models.coupon import Coupon
from billing_engine.infrastructure.db.repositories import CouponRepository, InvoiceRepository


logger = logging.getLogger(__name__)


class CouponService:
    """Coupon validation backed by invoice-derived usage counts."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()

    async def validate_coupon(
        self,
        session: AsyncSession,
        code: Optional[str],
        user_id: int,
        context: CouponContext,
    ) -> Optional[Coupon]:
        """
        Return the coupon when it applies to ``context``, else None.

        Usage is re-counted from invoices on every call.
        """
        if not code:
            return None

        coupon = await CouponRepository(session).get_by_code(code)
        if coupon is None:
            logger.info(f"Coupon {code!r} not found")
            return None

        invoices = InvoiceRepository(session)
        global_uses = await invoices.count_coupon_uses(coupon.code)
        user_uses = await invoices.count_coupon_uses(coupon.code, user_id=user_id)

        reason = rejection_reason(coupon, context, self._clock.now(), global_uses, user_uses)
        if reason:
            logger.info(f"Coupon {coupon.code} not applicable for user {user_id}: {reason}")
            return None

        return coupon


_coupon_service: Optional[CouponService] = None


def get_coupon_service() -> CouponService:
    global _coupon_service
    if _coupon_service is None:
        _coupon_service = CouponService()
    return _coupon_service
