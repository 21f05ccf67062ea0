"""
Stripe Webhook Handler

Gateway callbacks for checkout sessions. Implements idempotent event
processing backed by the database (survives restarts).

Handled events:
- checkout.session.completed / async_payment_succeeded: validate and apply the payment
- checkout.session.async_payment_failed: mark the payment FAILED (dunning takes over)
- checkout.session.expired: the customer abandoned checkout, same as a failure
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from billing_engine.api.dependencies import ReconciliationServiceDep
from billing_engine.infrastructure.db.database import get_session_context
from billing_engine.infrastructure.db.models import ProcessedWebhookEvent
from billing_engine.infrastructure.exceptions import (
    ConfigurationError,
    NotFoundError,
    PaymentGatewayError,
)
from billing_engine.infrastructure.payments import get_payment_gateway
from billing_engine.infrastructure.services import ReconciliationService


logger = logging.getLogger(__name__)

router = APIRouter()

SUCCESS_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
FAILURE_EVENTS = {"checkout.session.async_payment_failed", "checkout.session.expired"}


# =============================================================================
# Idempotency: DB-backed processed event tracking
# =============================================================================

async def is_event_processed(event_id: str) -> bool:
    """Check if a webhook event has already been processed."""
    async with get_session_context() as session:
        return await session.get(ProcessedWebhookEvent, event_id) is not None


async def mark_event_processed(event_id: str, event_type: str) -> None:
    """Record a processed webhook event."""
    async with get_session_context() as session:
        await session.merge(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))


# =============================================================================
# Webhook Endpoint
# =============================================================================

@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, service: ReconciliationServiceDep):
    """
    Handle Stripe webhook events.

    Verifies the signature, then routes checkout events to reconciliation.
    Gateway outages answer 503 so Stripe redelivers; anything else is
    acknowledged to stop retries of events that can never succeed.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    try:
        event = get_payment_gateway().verify_webhook_signature(payload, signature)
    except (PaymentGatewayError, ConfigurationError) as e:
        logger.error(f"Webhook signature verification failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    event_id = event.get("id")
    event_type = event.get("type")

    if await is_event_processed(event_id):
        logger.info(f"Event {event_id} already processed, skipping")
        return {"status": "already_processed"}

    logger.info(f"Processing webhook event: {event_type} ({event_id})")

    try:
        await dispatch_event(service, event_type, event["data"]["object"])
    except PaymentGatewayError as e:
        logger.warning(f"Gateway unavailable while handling {event_type} ({event_id}): {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway unavailable"
        )
    except NotFoundError:
        logger.warning(f"Event {event_id} references an unknown checkout session")
    except Exception as e:
        logger.exception(f"Error processing webhook {event_type}: {e}")
        # Redelivery would fail the same way; record it so it is not replayed
        await mark_event_processed(event_id, event_type)
        return {"status": "error", "message": str(e)}

    await mark_event_processed(event_id, event_type)
    return {"status": "success"}


async def dispatch_event(service: ReconciliationService, event_type: str, checkout_session: dict) -> None:
    session_key = checkout_session.get("id")
    if not session_key:
        logger.error(f"{event_type} without a session id")
        return

    if event_type in SUCCESS_EVENTS:
        await service.handle_payment_success(session_key)
    elif event_type in FAILURE_EVENTS:
        await service.handle_payment_failure(session_key, event_type.rsplit(".", 1)[-1])
    else:
        logger.debug(f"Unhandled event type: {event_type}")
