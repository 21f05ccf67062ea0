"""
Invoice Repository

Data access layer for invoices and invoice items.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.domain.subscription import InvoiceStatus, PaymentStatus, PurchaseType
from billing_engine.infrastructure.db.models.invoice import Invoice, InvoiceItem
from billing_engine.infrastructure.db.models.payment import Payment
from billing_engine.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class InvoiceRepository(BaseRepository[Invoice]):
    """Repository for invoices and their items."""

    def __init__(self, session: AsyncSession):
        super().__init__(Invoice, session)

    async def get_by_idempotency_key(self, user_id: int, idempotency_key: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(
            Invoice.user_id == user_id,
            Invoice.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_items(self, invoice_id: int) -> List[InvoiceItem]:
        stmt = select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id).order_by(InvoiceItem.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add_items(self, invoice: Invoice, items: Sequence[InvoiceItem]) -> List[InvoiceItem]:
        for item in items:
            item.invoice_id = invoice.id
        return await self.add_all(list(items))

    async def find_live_invoice(
        self,
        subscription_id: int,
        purchase_type: PurchaseType,
        created_since: Optional[datetime] = None,
    ) -> Optional[Invoice]:
        """
        Latest invoice of ``purchase_type`` for the subscription that is not
        FAILED or CANCELLED.

        Used to avoid billing the same renewal or trial conversion twice.
        """
        stmt = select(Invoice).where(
            Invoice.subscription_id == subscription_id,
            Invoice.purchase_type == purchase_type.value,
            Invoice.status.not_in([InvoiceStatus.FAILED.value, InvoiceStatus.CANCELLED.value]),
        )
        if created_since is not None:
            stmt = stmt.where(Invoice.created_at >= created_since)
        stmt = stmt.order_by(Invoice.id.desc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def count_coupon_uses(self, coupon_code: str, user_id: Optional[int] = None) -> int:
        """Coupon usage is the number of invoices carrying the code."""
        stmt = select(func.count()).select_from(Invoice).where(Invoice.coupon_code == coupon_code)
        if user_id is not None:
            stmt = stmt.where(Invoice.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def select_stale_pending(self, created_before: datetime, after_id: int, limit: int) -> List[Invoice]:
        """
        Old PENDING invoices nobody is collecting.

        Invoices with a FAILED payment are in dunning, which settles them
        (paid, or FAILED on escalation); escalation never leaves a PENDING
        invoice behind, so any FAILED payment on one is still being retried.
        """
        in_dunning = exists().where(
            Payment.invoice_id == Invoice.id,
            Payment.status == PaymentStatus.FAILED.value,
        )
        stmt = (
            select(Invoice)
            .where(
                Invoice.id > after_id,
                Invoice.status == InvoiceStatus.PENDING.value,
                Invoice.created_at < created_before,
                ~in_dunning,
            )
            .order_by(Invoice.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
