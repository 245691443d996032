"""FastAPI dependencies for request context and shared services.

This module provides reusable FastAPI dependencies for:
- Access to the services created in the application lifespan (``app.state``)
- Client identity (address, capability token)
"""

from typing import Annotated, Optional

from fastapi import Header, Request

from umrgen.api.rate_limit import SlidingWindowRateLimiter
from umrgen.core.config import Settings
from umrgen.services.assets.store import SessionAssetStore
from umrgen.services.entitlement.tokens import TokenService
from umrgen.services.history import HistoryLog
from umrgen.services.progress import ProgressBroadcaster
from umrgen.services.render.client import RenderBackendClient
from umrgen.workers.job_queue import JobQueueManager


def get_settings(request: Request) -> Settings:
    """Get application settings instance from app state."""
    return request.app.state.settings


def get_job_queue(request: Request) -> JobQueueManager:
    """Get the job queue manager created in the app lifespan.

    Example:
        >>> @router.get("/api/jobs/{job_id}")
        >>> async def job_status(job_id: str, queue=Depends(get_job_queue)):
        ...     return queue.status(job_id)
    """
    return request.app.state.job_queue


def get_asset_store(request: Request) -> SessionAssetStore:
    return request.app.state.asset_store


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster


def get_render_client(request: Request) -> RenderBackendClient:
    return request.app.state.render_client


def get_history(request: Request) -> HistoryLog:
    return request.app.state.history


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def get_client_address(
    request: Request,
    x_forwarded_for: Annotated[Optional[str], Header()] = None,
) -> str:
    """Client address for rate limiting and per-client concurrency.

    Uses the first ``X-Forwarded-For`` entry when present (deployment behind a
    reverse proxy), otherwise the socket peer address.
    """
    if x_forwarded_for:
        first = x_forwarded_for.split(",", 1)[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def get_capability_token(
    x_capability_token: Annotated[Optional[str], Header()] = None,
) -> Optional[str]:
    """Opaque capability token from the ``X-Capability-Token`` header."""
    return x_capability_token.strip() if x_capability_token else None
