"""
Payment Repository

Data access layer for payments and refunds.
"""

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.domain.money import ZERO, quantize_money
from billing_engine.domain.subscription import PaymentStatus, RefundStatus
from billing_engine.infrastructure.db.models.payment import Payment, Refund
from billing_engine.infrastructure.db.repositories.base_repository import BaseRepository


class PaymentRepository(BaseRepository[Payment]):
    """Repository for payment rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(Payment, session)

    async def get_by_transaction_id(self, transaction_id: str, for_update: bool = True) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.transaction_id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_invoice(self, invoice_id: int) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.invoice_id == invoice_id)
            .order_by(Payment.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_completed_for_invoice(self, invoice_id: int) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.invoice_id == invoice_id, Payment.status == PaymentStatus.COMPLETED.value)
            .order_by(Payment.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def sum_completed(self, invoice_id: int) -> Decimal:
        """Total collected for an invoice (completed payments only)."""
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.invoice_id == invoice_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        result = await self._session.execute(stmt)
        return quantize_money(result.scalar_one() or ZERO)

    async def select_failed(self, after_id: int, limit: int) -> List[Payment]:
        """FAILED payments by ascending id; retry state is filtered by the caller."""
        stmt = (
            select(Payment)
            .where(Payment.id > after_id, Payment.status == PaymentStatus.FAILED.value)
            .order_by(Payment.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


RESERVING_STATUSES = [RefundStatus.PENDING.value, RefundStatus.PROCESSING.value]


class RefundRepository(BaseRepository[Refund]):
    """Repository for refund rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(Refund, session)

    async def sum_completed(self, invoice_id: int) -> Decimal:
        stmt = select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.invoice_id == invoice_id,
            Refund.status == RefundStatus.COMPLETED.value,
        )
        result = await self._session.execute(stmt)
        return quantize_money(result.scalar_one() or ZERO)

    async def sum_reserved(self, invoice_id: int) -> Decimal:
        """Amount held by refunds that are requested or being executed."""
        stmt = select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.invoice_id == invoice_id,
            Refund.status.in_(RESERVING_STATUSES),
        )
        result = await self._session.execute(stmt)
        return quantize_money(result.scalar_one() or ZERO)

    async def list_by_status(self, invoice_id: int, status: RefundStatus) -> List[Refund]:
        """Refunds of an invoice in ``status`` (row locked)."""
        stmt = (
            select(Refund)
            .where(Refund.invoice_id == invoice_id, Refund.status == status.value)
            .order_by(Refund.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
