"""
Payment API Routes

Checkout initiation, the gateway return URL and refund requests.
"""

import logging

from fastapi import APIRouter, Query, status

from billing_engine.api.dependencies import CurrentUserDep, ReconciliationServiceDep
from billing_engine.domain.subscription import (
    InitiatePaymentRequest,
    PaymentInitiatedResponse,
    PaymentRead,
    RefundCreateRequest,
    RefundRead,
)


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/payments/initiate",
    response_model=PaymentInitiatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    user_id: CurrentUserDep,
    service: ReconciliationServiceDep,
):
    """Start a gateway checkout for a PENDING invoice."""
    initiated = await service.initiate_payment(request.invoice_id, user_id, request.payment_method)
    return PaymentInitiatedResponse(
        payment=PaymentRead.model_validate(initiated.payment),
        gateway_url=initiated.redirect_url,
    )


@router.get("/payments/callback", response_model=PaymentRead)
async def payment_callback(
    service: ReconciliationServiceDep,
    session_id: str = Query(..., min_length=1),
):
    """
    Gateway return URL.

    The reference is re-validated with the gateway before anything is
    applied, so the redirect itself carries no authority.
    """
    payment = await service.handle_payment_success(session_id)
    return PaymentRead.model_validate(payment)


@router.post(
    "/payments/{invoice_id}/refunds",
    response_model=RefundRead,
    status_code=status.HTTP_201_CREATED,
)
async def request_refund(
    invoice_id: int,
    request: RefundCreateRequest,
    user_id: CurrentUserDep,
    service: ReconciliationServiceDep,
):
    """Open a refund request; an admin approves or rejects it."""
    refund = await service.request_refund(invoice_id, user_id, request.reason, request.amount)
    return RefundRead.model_validate(refund)
