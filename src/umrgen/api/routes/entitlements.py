"""Entitlement API endpoints.

- POST /api/entitlements/activate - Exchange an activation key for a capability token
- GET /api/entitlements/me - Tier and remaining uses of the presented token
"""

from datetime import UTC, datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from umrgen.api.dependencies import (
    get_capability_token,
    get_client_address,
    get_rate_limiter,
    get_token_service,
)
from umrgen.api.rate_limit import SlidingWindowRateLimiter
from umrgen.models.tier import Tier
from umrgen.services.entitlement.tokens import TokenClaims, TokenService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class ActivateRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=256)


class EntitlementResponse(BaseModel):
    tier: Tier
    valid: bool
    usage_limit: Optional[int] = None
    remaining_uses: Optional[int] = None
    expires_at: Optional[datetime] = None


class ActivateResponse(EntitlementResponse):
    token: str


def _expires_at(claims: TokenClaims) -> Optional[datetime]:
    if claims.expires_at is None:
        return None
    return datetime.fromtimestamp(claims.expires_at, tz=UTC)


@router.post("/activate", response_model=ActivateResponse)
async def activate(
    body: ActivateRequest,
    client_address: str = Depends(get_client_address),
    tokens: TokenService = Depends(get_token_service),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> ActivateResponse:
    """Exchange a shared-secret activation key for a signed token.

    Attempts share the client's rate-limit budget to slow down key guessing.

    Raises:
        InvalidActivationKeyError (403): Key not recognized
        RateLimitedError (429): Too many attempts
    """
    limiter.hit(f"activate:{client_address}")
    token = tokens.activate(body.key.strip())
    claims = tokens.verify(token)
    logger.info("entitlement.activated", tier=claims.tier.value, key_id=claims.key_id)
    return ActivateResponse(
        token=token,
        tier=claims.tier,
        valid=claims.valid,
        usage_limit=claims.usage_limit,
        remaining_uses=tokens.remaining(token),
        expires_at=_expires_at(claims),
    )


@router.get("/me", response_model=EntitlementResponse)
async def current_entitlement(
    token: Optional[str] = Depends(get_capability_token),
    tokens: TokenService = Depends(get_token_service),
) -> EntitlementResponse:
    """Describe the presented token. Missing or invalid tokens report the free tier."""
    claims = tokens.verify(token)
    return EntitlementResponse(
        tier=claims.tier,
        valid=claims.valid,
        usage_limit=claims.usage_limit,
        remaining_uses=tokens.remaining(token),
        expires_at=_expires_at(claims),
    )
