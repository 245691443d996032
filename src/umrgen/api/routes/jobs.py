"""Generation job API endpoints.

This module implements the request gateway for generation jobs:
- POST /api/jobs - Validate, check entitlements and admit a job
- GET /api/jobs/{job_id} - Job state, queue position, ETA, result or error
- GET /api/jobs/{job_id}/events - Server-Sent Events progress stream
- POST /api/jobs/{job_id}/cancel - Cancel a queued or running job

Admission order for POST /api/jobs:
    rate limit -> session id -> prompt -> token -> content policy
    -> premium gate -> quota -> queue admission -> consume one use
"""

import asyncio
import secrets
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from umrgen.api.dependencies import (
    get_broadcaster,
    get_capability_token,
    get_client_address,
    get_job_queue,
    get_rate_limiter,
    get_settings,
    get_token_service,
)
from umrgen.api.rate_limit import SlidingWindowRateLimiter
from umrgen.core.config import Settings
from umrgen.models.job import GenerationParameters, Job, JobOwner, JobState, JobView, PostProcessing
from umrgen.services.assets.store import resolve_asset_name, validate_session_id
from umrgen.services.entitlement.policy import scan_policy
from umrgen.services.entitlement.tokens import TokenService
from umrgen.services.exceptions import (
    ContentBlockedError,
    ContentRestrictedError,
    PremiumFeatureError,
    UsageLimitError,
)
from umrgen.services.progress import SSE_KEEPALIVE, ProgressBroadcaster, format_sse_chunk
from umrgen.services.prompt_validator import normalize_negative_prompt, validate_prompt
from umrgen.workers.job_queue import JobQueueManager

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/jobs", tags=["jobs"])

SSE_KEEPALIVE_SECONDS = 15.0
MAX_SEED = 2**32 - 1


# Request/Response Models


class CreateJobRequest(BaseModel):
    """Request model for a new generation job."""

    session_id: str = Field(..., description="Client session id (sid_...)")
    prompt: str = Field(..., description="Positive prompt; truncated to the configured maximum")
    negative_prompt: Optional[str] = Field(default=None, description="Defaults when blank")
    width: int = Field(default=512, ge=64, le=2048)
    height: int = Field(default=512, ge=64, le=2048)
    seed: Optional[int] = Field(default=None, ge=0, le=MAX_SEED)
    lora: Optional[str] = Field(default=None, description="Name of a session custom model")
    lora_strength: Optional[float] = None
    upscale: bool = False
    upscale_factor: Optional[float] = None
    detail: bool = False
    post: PostProcessing = Field(default_factory=PostProcessing)


class CreateJobResponse(BaseModel):
    """Response model for an admitted job."""

    job_id: str
    state: JobState
    queue_position: Optional[int] = None
    eta_seconds: Optional[float] = None
    remaining_uses: Optional[int] = Field(
        default=None, description="Uses left on a metered token (null when unmetered)"
    )


# Endpoints


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    body: CreateJobRequest,
    client_address: str = Depends(get_client_address),
    token: Optional[str] = Depends(get_capability_token),
    settings: Settings = Depends(get_settings),
    queue: JobQueueManager = Depends(get_job_queue),
    tokens: TokenService = Depends(get_token_service),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> CreateJobResponse:
    """Validate a generation request and admit it to the queue.

    Returns:
        202 with job id, queue position, ETA and remaining metered uses

    Raises:
        RateLimitedError / QueueFullError / ClientBusyError (429)
        ContentBlockedError / ContentRestrictedError / PremiumFeatureError /
        UsageLimitError (403)
        InvalidSessionError / InvalidPromptError / AssetNotFoundError (400)
    """
    limiter.hit(client_address)

    session_id = validate_session_id(body.session_id)
    prompt = validate_prompt(body.prompt, settings.max_prompt_chars)
    negative_prompt = normalize_negative_prompt(
        body.negative_prompt, settings.default_negative_prompt, settings.max_prompt_chars
    )

    claims = tokens.verify(token)

    violation = scan_policy(prompt, claims.tier)
    if violation is not None:
        logger.info(
            "gateway.policy_rejected",
            session_id=session_id,
            reason=violation.reason,
            pattern=violation.pattern,
            tier=claims.tier.value,
        )
        if violation.reason == ContentBlockedError.reason:
            raise ContentBlockedError("Prompt contains content that is not permitted")
        raise ContentRestrictedError("Prompt contains content that requires a paid tier")

    parameters = GenerationParameters(
        prompt=prompt,
        negative_prompt=negative_prompt,
        width=body.width,
        height=body.height,
        seed=body.seed if body.seed is not None else secrets.randbelow(MAX_SEED + 1),
        lora=resolve_asset_name(body.lora) if body.lora else None,
        lora_strength=body.lora_strength,
        upscale=body.upscale,
        upscale_factor=body.upscale_factor,
        detail=body.detail,
        post=body.post,
    )

    if parameters.uses_premium_features and not claims.tier.is_paid:
        raise PremiumFeatureError("Custom models, upscaling and detail passes need a paid tier")

    remaining = tokens.remaining(token)
    if remaining is not None and remaining <= 0:
        raise UsageLimitError("This token has no generations left")

    job = queue.submit(
        parameters,
        JobOwner(session_id=session_id, client_address=client_address, tier=claims.tier),
    )
    consumed = tokens.consume(token)

    view = queue.view(job)
    return CreateJobResponse(
        job_id=job.id,
        state=view.state,
        queue_position=view.queue_position,
        eta_seconds=view.eta_seconds,
        remaining_uses=consumed.remaining,
    )


@router.get("/{job_id}", response_model=JobView)
async def get_job_status(
    job_id: str,
    queue: JobQueueManager = Depends(get_job_queue),
) -> JobView:
    """Get job state. 404 once the job is unknown or purged."""
    return queue.status(job_id)


async def _job_event_stream(
    request: Request,
    job: Job,
    queue: JobQueueManager,
    broadcaster: ProgressBroadcaster,
    keepalive_seconds: float,
) -> AsyncGenerator[bytes, Any]:
    subscription = broadcaster.subscribe(job.id)
    try:
        snapshot = {"event": "state", **queue.view(job).model_dump(mode="json")}
        yield format_sse_chunk("state", snapshot)

        if job.state.is_terminal:
            yield format_sse_chunk("end", {"event": "end"})
            return

        while True:
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=keepalive_seconds)
            except TimeoutError:
                if await request.is_disconnected():
                    break
                yield SSE_KEEPALIVE
                continue

            yield format_sse_chunk(event.get("event"), event)
            if event.get("event") == "end":
                break
    finally:
        broadcaster.unsubscribe(job.id, subscription)


@router.get("/{job_id}/events")
async def stream_job_events(
    job_id: str,
    request: Request,
    queue: JobQueueManager = Depends(get_job_queue),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
) -> StreamingResponse:
    """Stream state, progress and preview events until the job ends."""
    job = queue.get_job(job_id)
    keepalive = getattr(request.app.state, "sse_keepalive_seconds", SSE_KEEPALIVE_SECONDS)
    return StreamingResponse(
        _job_event_stream(request, job, queue, broadcaster, keepalive),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{job_id}/cancel", response_model=JobView)
async def cancel_job(
    job_id: str,
    queue: JobQueueManager = Depends(get_job_queue),
) -> JobView:
    """Cancel a job. Running jobs finish rendering, then their result is discarded."""
    return queue.cancel(job_id)
