"""
Tests for the Stripe webhook endpoint.

Signature verification is delegated to the gateway; the fixture gateway
accepts the literal signature "valid".
"""

import json

import pytest

from billing_engine.api.routes import webhooks
from billing_engine.domain.subscription import (
    BillingCycle,
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing_engine.infrastructure.db.models import Payment, ProcessedWebhookEvent, Subscription

from conftest import load


WEBHOOK_URL = "/api/webhooks/stripe"


def stripe_event(event_id: str, event_type: str, session_id: str) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "data": {"object": {"id": session_id}}}
    ).encode()


async def post_event(client, body: bytes, signature: str = "valid"):
    return await client.post(
        WEBHOOK_URL,
        content=body,
        headers={"stripe-signature": signature, "Content-Type": "application/json"},
    )


@pytest.fixture
async def checkout(catalogue, subscriptions, reconciliation):
    result = await subscriptions.create_subscription(1, SubscriptionTier.GOLD, BillingCycle.MONTHLY)
    initiated = await reconciliation.initiate_payment(result.invoice.id, 1)
    return result, initiated.payment


class TestSignature:
    async def test_missing_signature(self, async_client, gateway):
        response = await async_client.post(WEBHOOK_URL, content=b"{}")

        assert response.status_code == 400
        assert response.json()["detail"] == "Missing Stripe signature"

    async def test_invalid_signature(self, async_client, gateway):
        response = await post_event(async_client, stripe_event("evt_1", "checkout.session.completed", "x"), "forged")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"


class TestCheckoutEvents:
    async def test_completed_session_activates_subscription(self, async_client, checkout):
        result, payment = checkout

        response = await post_event(
            async_client, stripe_event("evt_1", "checkout.session.completed", payment.transaction_id)
        )

        assert response.status_code == 200
        assert response.json() == {"status": "success"}
        assert (await load(Payment, payment.id)).status == PaymentStatus.COMPLETED.value
        assert (await load(Subscription, result.subscription.id)).status == SubscriptionStatus.ACTIVE.value
        assert await load(ProcessedWebhookEvent, "evt_1") is not None

    async def test_redelivered_event_is_not_reprocessed(self, async_client, checkout):
        _, payment = checkout
        body = stripe_event("evt_1", "checkout.session.completed", payment.transaction_id)
        await post_event(async_client, body)

        response = await post_event(async_client, body)

        assert response.json() == {"status": "already_processed"}

    async def test_expired_session_fails_payment(self, async_client, checkout):
        result, payment = checkout

        response = await post_event(
            async_client, stripe_event("evt_2", "checkout.session.expired", payment.transaction_id)
        )

        assert response.status_code == 200
        stored = await load(Payment, payment.id)
        assert stored.status == PaymentStatus.FAILED.value
        assert stored.meta["failure_reason"] == "expired"
        assert (await load(Subscription, result.subscription.id)).status == SubscriptionStatus.PENDING.value

    async def test_unknown_session_is_acknowledged(self, async_client, database, gateway):
        response = await post_event(
            async_client, stripe_event("evt_3", "checkout.session.completed", "cs_unknown")
        )

        assert response.status_code == 200
        assert response.json() == {"status": "success"}
        assert await load(ProcessedWebhookEvent, "evt_3") is not None

    async def test_unhandled_event_type_is_acknowledged(self, async_client, database, gateway):
        response = await post_event(async_client, stripe_event("evt_4", "customer.created", "cus_1"))

        assert response.json() == {"status": "success"}

    async def test_gateway_outage_asks_for_redelivery(self, async_client, checkout, gateway):
        _, payment = checkout
        body = stripe_event("evt_5", "checkout.session.completed", payment.transaction_id)
        gateway.fail_validate = True

        response = await post_event(async_client, body)

        assert response.status_code == 503
        assert await load(ProcessedWebhookEvent, "evt_5") is None

        gateway.fail_validate = False
        retried = await post_event(async_client, body)

        assert retried.json() == {"status": "success"}
        assert (await load(Payment, payment.id)).status == PaymentStatus.COMPLETED.value

    async def test_handler_error_is_acknowledged_and_recorded(self, async_client, checkout, monkeypatch):
        _, payment = checkout

        async def broken(service, event_type, checkout_session):
            raise RuntimeError("ledger out of sync")

        monkeypatch.setattr(webhooks, "dispatch_event", broken)
        body = stripe_event("evt_6", "checkout.session.completed", payment.transaction_id)

        response = await post_event(async_client, body)

        assert response.status_code == 200
        assert response.json() == {"status": "error", "message": "ledger out of sync"}
        assert await load(ProcessedWebhookEvent, "evt_6") is not None

        redelivered = await post_event(async_client, body)

        assert redelivered.json() == {"status": "already_processed"}
        assert (await load(Payment, payment.id)).status == PaymentStatus.PENDING.value
