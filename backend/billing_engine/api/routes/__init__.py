# API Routes Module
from billing_engine.api.routes import (
    subscriptions,
    payments,
    admin,
    webhooks,
)

__all__ = [
    "subscriptions",
    "payments",
    "admin",
    "webhooks",
]
