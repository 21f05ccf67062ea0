"""
Subscription Billing Engine - FastAPI Application

Main entry point for the billing API: plans, subscription commands,
payments, refunds and gateway webhooks. The lifecycle scheduler and the
queue workers run as separate processes (see ``scripts/``).
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_engine.config.settings import settings
from billing_engine.infrastructure.exceptions import (
    BillingEngineError,
    ConflictError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Billing engine starting in {settings.environment} mode...")

    from billing_engine.infrastructure.db.database import close_db, init_db

    try:
        await init_db()
        logger.info("Database connection pool initialized")
    except Exception as e:
        logger.warning(f"Database initialization skipped: {e}")

    yield

    try:
        await close_db()
        logger.info("Database connection pool closed")
    except Exception as e:
        logger.warning(f"Database shutdown error: {e}")

    from billing_engine.infrastructure.queue import get_work_queue
    await get_work_queue().close()

    logger.info("Billing engine shutting down...")


app = FastAPI(
    title="Subscription Billing Engine",
    description="Subscriptions, invoicing, payments and lifecycle automation",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    """Duplicate subscriptions and invalid state transitions."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(PaymentGatewayError)
async def gateway_error_handler(request: Request, exc: PaymentGatewayError):
    """Gateway refused or timed out."""
    logger.warning(f"Gateway error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(BillingEngineError)
async def general_error_handler(request: Request, exc: BillingEngineError):
    """Handle all other application errors."""
    logger.error(f"Unhandled {exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.service_name}


# ============================================================================
# Import and register routers
# ============================================================================

from billing_engine.api.routes import admin, payments, subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(payments.router, prefix="/api", tags=["Payments"])
app.include_router(admin.router, prefix="/api", tags=["Admin"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
