"""
Subscription API Routes

Plans catalogue and the subscription commands. Mutating endpoints accept an
``Idempotency-Key`` header; repeating a request with the same key returns the
original result instead of billing twice.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Response, status

from billing_engine.api.dependencies import CurrentUserDep, SubscriptionServiceDep
from billing_engine.domain.subscription import (
    ChangePlanRequest,
    ChangePlanResponse,
    CreateSubscriptionRequest,
    PlansResponse,
    ProrationRead,
    SubscriptionCheckoutResponse,
    SubscriptionRead,
)
from billing_engine.infrastructure.services import CheckoutResult


logger = logging.getLogger(__name__)

router = APIRouter()


def _checkout_response(result: CheckoutResult, response: Response) -> SubscriptionCheckoutResponse:
    if not result.replayed:
        response.status_code = status.HTTP_201_CREATED
    return SubscriptionCheckoutResponse(
        subscription=result.subscription,
        invoice=result.invoice,
        replayed=result.replayed,
    )


@router.get("/subscriptions/plans", response_model=PlansResponse)
async def list_plans(
    service: SubscriptionServiceDep,
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
):
    """Active plans grouped by tier."""
    plans = await service.list_plans(currency.upper() if currency else None)
    return PlansResponse(plans=plans)


@router.get("/subscriptions/current", response_model=SubscriptionRead)
async def get_current_subscription(user_id: CurrentUserDep, service: SubscriptionServiceDep):
    subscription = await service.get_current(user_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No open subscription")
    return subscription


@router.post("/subscriptions", response_model=SubscriptionCheckoutResponse, response_model_by_alias=True)
async def create_subscription(
    request: CreateSubscriptionRequest,
    response: Response,
    user_id: CurrentUserDep,
    service: SubscriptionServiceDep,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=100),
):
    """
    Purchase a subscription.

    Returns 201 with the new PENDING subscription and its invoice (or an
    ACTIVE trial), 200 when the request is a replay.
    """
    result = await service.create_subscription(
        user_id=user_id,
        tier=request.tier,
        billing_cycle=request.billing_cycle,
        coupon_code=request.coupon_code,
        idempotency_key=idempotency_key,
        trial_days=request.trial_days,
        currency=request.currency,
        region=request.region,
    )
    return _checkout_response(result, response)


@router.post(
    "/subscriptions/{subscription_id}/change",
    response_model=ChangePlanResponse,
    response_model_by_alias=True,
)
async def change_plan(
    subscription_id: int,
    request: ChangePlanRequest,
    user_id: CurrentUserDep,
    service: SubscriptionServiceDep,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=100),
):
    """Upgrade mid-cycle with proration. Downgrades are refused."""
    result = await service.change_plan(
        subscription_id=subscription_id,
        user_id=user_id,
        tier=request.tier,
        billing_cycle=request.billing_cycle,
        idempotency_key=idempotency_key,
    )
    return ChangePlanResponse(
        subscription=result.subscription,
        proration=ProrationRead.model_validate(result.proration),
        invoice=result.invoice,
        replayed=result.replayed,
    )


@router.patch("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRead)
async def cancel_subscription(subscription_id: int, user_id: CurrentUserDep, service: SubscriptionServiceDep):
    return await service.cancel_subscription(subscription_id, user_id)


@router.post(
    "/subscriptions/{subscription_id}/reactivate",
    response_model=SubscriptionCheckoutResponse,
    response_model_by_alias=True,
)
async def reactivate_subscription(
    subscription_id: int,
    response: Response,
    user_id: CurrentUserDep,
    service: SubscriptionServiceDep,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=100),
):
    result = await service.reactivate_subscription(subscription_id, user_id, idempotency_key)
    return _checkout_response(result, response)
