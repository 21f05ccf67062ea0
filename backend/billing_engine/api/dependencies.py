"""
API Dependencies

FastAPI dependency injection for authentication and the billing services.

Security: bearer tokens are issued by the identity service and verified
with the shared JWT secret. Never decode without verification.
"""

import logging
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from billing_engine.config.settings import get_settings
from billing_engine.infrastructure.services import (
    ReconciliationService,
    SubscriptionService,
    get_reconciliation_service,
    get_subscription_service,
)


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


def _decode(token: str) -> dict:
    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured; rejecting all tokens")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )

    options = {"require": ["exp", "sub"]}
    if not settings.jwt_audience:
        options["verify_aud"] = False

    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options=options,
    )


async def get_token_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Verify the bearer token and return its claims.

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return _decode(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )


async def get_current_user_id(claims: dict = Depends(get_token_claims)) -> int:
    """Authenticated user ID (numeric ``sub`` claim)."""
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )


async def require_admin(
    claims: dict = Depends(get_token_claims),
    user_id: int = Depends(get_current_user_id),
) -> int:
    """Admin user ID; 403 for anyone without the admin role."""
    roles = claims.get("roles") or [claims.get("role")]
    if ADMIN_ROLE not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user_id


CurrentUserDep = Annotated[int, Depends(get_current_user_id)]
AdminDep = Annotated[int, Depends(require_admin)]
SubscriptionServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]
ReconciliationServiceDep = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
