"""
Test configuration and fixtures for the billing engine.

Every test that touches storage gets its own SQLite file, a controllable
clock, an in-memory work queue and a scripted payment gateway.
"""

import json
import os
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

# Must be set before billing_engine.config.settings is imported
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-billing.db")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from billing_engine.domain.subscription import BillingCycle, GatewayStatus, SubscriptionTier
from billing_engine.infrastructure.db.database import get_db_manager, get_session_context
from billing_engine.infrastructure.db.models import SubscriptionPrice
from billing_engine.infrastructure.exceptions import PaymentGatewayError
from billing_engine.infrastructure.payments.gateway import (
    CheckoutRequest,
    GatewayRefund,
    GatewaySession,
    GatewayValidation,
    PaymentGateway,
    set_payment_gateway,
)
from billing_engine.infrastructure.queue.work_queue import InMemoryWorkQueue, set_work_queue
from billing_engine.infrastructure.services import (
    DunningService,
    InvoiceService,
    PricingService,
    ReconciliationService,
    SubscriptionService,
)
from billing_engine.jobs import LifecycleScans, LifecycleWorkers


# June has 30 days, which keeps monthly proration arithmetic exact
START = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Test Doubles
# =============================================================================

class FakeClock:
    """Clock the tests move by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or START

    def now(self) -> datetime:
        return self._now

    def advance(self, days: int = 0, hours: int = 0) -> datetime:
        self._now += timedelta(days=days, hours=hours)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


class FakeGateway(PaymentGateway):
    """Scripted gateway recording every call."""

    def __init__(self):
        self.validation_status = GatewayStatus.VALID
        self.refund_status = GatewayStatus.VALID
        self.fail_initiate = False
        self.fail_validate = False
        self.initiated: list[CheckoutRequest] = []
        self.refunds: list[tuple] = []
        self._counter = 0

    async def initiate(self, request: CheckoutRequest) -> GatewaySession:
        self.initiated.append(request)
        if self.fail_initiate:
            raise PaymentGatewayError("card declined", operation="initiate")
        self._counter += 1
        session_key = f"cs_test_{self._counter}"
        return GatewaySession(session_key=session_key, redirect_url=f"https://checkout.test/{session_key}")

    async def validate(self, transaction_ref: str) -> GatewayValidation:
        if self.fail_validate:
            raise PaymentGatewayError("gateway unavailable", operation="validate")
        return GatewayValidation(
            status=self.validation_status,
            bank_transaction_id=f"pi_{transaction_ref}",
            raw={"id": transaction_ref},
        )

    async def refund(self, bank_transaction_id: str, amount: Decimal, remarks: str) -> GatewayRefund:
        self.refunds.append((bank_transaction_id, amount, remarks))
        return GatewayRefund(status=self.refund_status, refund_reference=f"re_{len(self.refunds)}")

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict:
        if signature != "valid":
            raise PaymentGatewayError("signature mismatch", operation="webhook")
        return json.loads(payload)


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh SQLite database per test."""
    db = get_db_manager()
    db.configure(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await db.create_tables()
    yield
    await db.close()


@pytest.fixture
def queue() -> InMemoryWorkQueue:
    work_queue = InMemoryWorkQueue()
    set_work_queue(work_queue)
    yield work_queue
    set_work_queue(None)


@pytest.fixture
def gateway() -> FakeGateway:
    fake = FakeGateway()
    set_payment_gateway(fake)
    yield fake
    set_payment_gateway(None)


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def pricing(clock) -> PricingService:
    return PricingService(clock)


@pytest.fixture
def invoices(clock) -> InvoiceService:
    return InvoiceService(clock=clock)


@pytest.fixture
def dunning(gateway, clock) -> DunningService:
    return DunningService(gateway, clock)


@pytest.fixture
def reconciliation(gateway, dunning, clock) -> ReconciliationService:
    return ReconciliationService(gateway, dunning, clock)


@pytest.fixture
def subscriptions(pricing, invoices, reconciliation, clock) -> SubscriptionService:
    return SubscriptionService(pricing, invoices, reconciliation, clock)


@pytest.fixture
def scans(queue, pricing, invoices, dunning, reconciliation, clock) -> LifecycleScans:
    return LifecycleScans(queue, pricing, invoices, dunning, reconciliation, clock)


@pytest.fixture
def workers(pricing, invoices, dunning, reconciliation, clock) -> LifecycleWorkers:
    return LifecycleWorkers(pricing, invoices, dunning, reconciliation, clock)


# =============================================================================
# Data Helpers
# =============================================================================

async def seed_price(
    tier: SubscriptionTier = SubscriptionTier.GOLD,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    price: str = "29.99",
    setup_fee: str = "0.00",
    tax_rate: str = "0",
    currency: str = "USD",
    region: str = "GLOBAL",
    discount_percentage: Optional[str] = None,
) -> SubscriptionPrice:
    async with get_session_context() as session:
        row = SubscriptionPrice(
            tier=tier.value,
            billing_cycle=billing_cycle.value,
            currency=currency,
            region=region,
            price=Decimal(price),
            setup_fee=Decimal(setup_fee),
            tax_rate=Decimal(tax_rate),
            discount_percentage=Decimal(discount_percentage) if discount_percentage else None,
            active=True,
        )
        session.add(row)
        await session.flush()
        return row


@pytest.fixture
async def catalogue(database):
    """GOLD/PLATINUM/DIAMOND monthly and yearly USD prices."""
    await seed_price(SubscriptionTier.GOLD, BillingCycle.MONTHLY, "30.00")
    await seed_price(SubscriptionTier.GOLD, BillingCycle.YEARLY, "300.00")
    await seed_price(SubscriptionTier.PLATINUM, BillingCycle.MONTHLY, "60.00")
    await seed_price(SubscriptionTier.PLATINUM, BillingCycle.YEARLY, "600.00")
    await seed_price(SubscriptionTier.DIAMOND, BillingCycle.MONTHLY, "90.00")


async def load(model, row_id):
    """Fresh copy of a row, read in its own unit of work."""
    async with get_session_context() as session:
        return await session.get(model, row_id)


async def update_row(model, row_id, **values):
    """Force column values, bypassing the services."""
    async with get_session_context() as session:
        row = await session.get(model, row_id)
        for name, value in values.items():
            setattr(row, name, value)
        await session.flush()
        return row


async def purchase_and_pay(
    subscriptions: SubscriptionService,
    reconciliation: ReconciliationService,
    user_id: int,
    tier: SubscriptionTier = SubscriptionTier.GOLD,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
):
    """Buy a plan and complete its checkout; returns (result, paid payment)."""
    result = await subscriptions.create_subscription(user_id, tier, billing_cycle)
    initiated = await reconciliation.initiate_payment(result.invoice.id, user_id)
    payment = await reconciliation.handle_payment_success(initiated.payment.transaction_id)
    return result, payment


# =============================================================================
# App Fixtures
# =============================================================================

def make_token(user_id: int, role: Optional[str] = None, expires_in: int = 3600, secret: str = "test-secret") -> str:
    payload = {"sub": str(user_id), "exp": int(time.time()) + expires_in}
    if role:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: int, role: Optional[str] = None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def app(subscriptions, reconciliation):
    """FastAPI application wired to the fixture services."""
    from billing_engine.infrastructure.services import get_reconciliation_service, get_subscription_service
    from billing_engine.main import app

    app.dependency_overrides[get_subscription_service] = lambda: subscriptions
    app.dependency_overrides[get_reconciliation_service] = lambda: reconciliation
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app, database) -> AsyncGenerator[AsyncClient, None]:
    """Async test client sharing the test's event loop and database."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
