"""
Admin API Routes

Refund decisions. Every endpoint requires the admin role.
"""

import logging
from typing import Optional

from fastapi import APIRouter

from billing_engine.api.dependencies import AdminDep, ReconciliationServiceDep
from billing_engine.domain.subscription import RefundDecisionRequest, RefundRead


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/admin/refunds/{refund_id}/approve", response_model=RefundRead)
async def approve_refund(refund_id: int, admin_id: AdminDep, service: ReconciliationServiceDep):
    """Refund through the gateway, then cancel the subscription."""
    refund = await service.approve_refund(refund_id, admin_id)
    logger.info(f"Admin {admin_id} approved refund {refund_id}")
    return RefundRead.model_validate(refund)


@router.post("/admin/refunds/{refund_id}/reject", response_model=RefundRead)
async def reject_refund(
    refund_id: int,
    admin_id: AdminDep,
    service: ReconciliationServiceDep,
    request: Optional[RefundDecisionRequest] = None,
):
    refund = await service.reject_refund(refund_id, admin_id, request.notes if request else None)
    return RefundRead.model_validate(refund)
