"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from typing import Awaitable, Callable, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from umrgen.api.rate_limit import SlidingWindowRateLimiter
from umrgen.api.routes import assets, entitlements, jobs, outputs
from umrgen.core.config import Settings, configure_logging
from umrgen.models.tier import Tier
from umrgen.services.assets.store import SessionAssetStore
from umrgen.services.entitlement.tokens import TokenService
from umrgen.services.exceptions import ServiceError
from umrgen.services.history import HistoryLog
from umrgen.services.pipeline.graph import RenderModels
from umrgen.services.progress import ProgressBroadcaster
from umrgen.services.render.client import RenderBackendClient
from umrgen.workers.job_queue import JobQueueManager
from umrgen.workers.session_sweeper import run_session_sweeper

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    tasks: set[asyncio.Task],
) -> asyncio.Task:
    """Run a worker loop as a task that is restarted whenever it dies.

    Args:
        coro_func: Zero-argument coroutine function running the worker loop
        worker_name: Worker name used in log events
        shutdown_event: Once set, finished workers are no longer restarted
        tasks: Set tracking the live task of every worker (initial and restarted)

    Returns:
        The first task; restarts replace it in ``tasks``
    """
    restart_delay = 1.0

    def spawn() -> asyncio.Task:
        task = asyncio.create_task(coro_func(), name=worker_name)
        task.add_done_callback(on_worker_done)
        tasks.add(task)
        return task

    def on_worker_done(task: asyncio.Task) -> None:
        tasks.discard(task)

        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            # Worker loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=restart_delay,
            )

        async def restart() -> None:
            await asyncio.sleep(restart_delay)
            if shutdown_event.is_set():
                return
            logger.info("worker.restarting", worker=worker_name)
            spawn()

        pending = asyncio.create_task(restart())
        tasks.add(pending)
        pending.add_done_callback(tasks.discard)

    return spawn()


def _token_service(settings: Settings) -> TokenService:
    activation_keys = {}
    if settings.pro_activation_key:
        activation_keys[settings.pro_activation_key] = (Tier.PRO, None)
    if settings.trial_activation_key:
        activation_keys[settings.trial_activation_key] = (Tier.TRIAL, settings.trial_usage_limit)
    return TokenService(
        secret=settings.token_secret,
        default_ttl_seconds=settings.token_ttl_hours * 3600,
        activation_keys=activation_keys,
    )


def init_services(
    app: FastAPI,
    settings: Settings,
    render_client: Optional[RenderBackendClient] = None,
    asset_store: Optional[SessionAssetStore] = None,
) -> None:
    """Create the process-wide services and store them in ``app.state``."""
    render_client = render_client or RenderBackendClient(
        base_url=settings.render_backend_url,
        ws_url=settings.render_ws_url,
        submit_timeout=settings.render_submit_timeout_seconds,
        render_timeout=settings.render_timeout_seconds,
    )
    asset_store = asset_store or SessionAssetStore(
        session_root=settings.session_root,
        backend_lora_dir=settings.backend_lora_dir,
        max_asset_bytes=settings.max_asset_bytes,
        min_asset_bytes=settings.min_asset_bytes,
        session_ttl_seconds=settings.session_ttl_hours * 3600,
        max_url_length=settings.max_url_length,
        connect_timeout=settings.import_connect_timeout_seconds,
    )
    broadcaster = ProgressBroadcaster()
    history = HistoryLog(settings.output_root, limit=settings.history_limit)

    app.state.settings = settings
    app.state.render_client = render_client
    app.state.asset_store = asset_store
    app.state.broadcaster = broadcaster
    app.state.history = history
    app.state.token_service = _token_service(settings)
    app.state.rate_limiter = SlidingWindowRateLimiter(settings.rate_limit_per_minute)
    app.state.job_queue = JobQueueManager(
        asset_store=asset_store,
        render_client=render_client,
        broadcaster=broadcaster,
        models=RenderModels.from_settings(settings),
        output_root=settings.output_root,
        history=history,
        capacity=settings.queue_capacity,
        retention_seconds=settings.job_retention_seconds,
        eta_default_seconds=settings.eta_default_seconds,
        eta_window=settings.eta_window,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, remove stale mounts, start scheduler and sweeper
    - Shutdown: Stop workers, close render channels

    Workers automatically restart on failure.
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    # Mounts left by a previous process belong to jobs that no longer exist
    asset_store: SessionAssetStore = app.state.asset_store
    asset_store.cleanup_stale_mounts()

    shutdown_event = asyncio.Event()
    worker_tasks: set[asyncio.Task] = set()
    queue: JobQueueManager = app.state.job_queue

    # Single scheduler task: the only place jobs are executed
    create_resilient_worker(queue.run, "scheduler", shutdown_event, worker_tasks)
    create_resilient_worker(
        partial(run_session_sweeper, asset_store, settings.sweep_interval_seconds),
        "session_sweeper",
        shutdown_event,
        worker_tasks,
    )

    logger.info(
        "application.startup",
        render_backend=settings.render_backend_url,
        queue_capacity=settings.queue_capacity,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    # Cancel all workers (initial or restarted) and wait for them
    running = list(worker_tasks)
    for task in running:
        task.cancel()
    await asyncio.gather(*running, return_exceptions=True)

    queue.shutdown()
    await app.state.render_client.close()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Map service errors to ``{"error": {reason, message, retryable}}``."""
    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, reason=exc.reason, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app(
    settings: Optional[Settings] = None,
    render_client: Optional[RenderBackendClient] = None,
    asset_store: Optional[SessionAssetStore] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use (loaded from the environment when omitted)
        render_client: Optional render client (tests inject a fake backend)
        asset_store: Optional asset store

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="UMRGEN Generation API",
        description="Generation job orchestrator for a shared diffusion render backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    init_services(app, settings, render_client=render_client, asset_store=asset_store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceError, service_error_handler)

    app.include_router(jobs.router)
    app.include_router(assets.router)
    app.include_router(entitlements.router)
    app.include_router(outputs.router)

    @app.get("/health")
    async def health_check():
        """Process health with queue occupancy."""
        queue: JobQueueManager = app.state.job_queue
        return {
            "status": "healthy",
            "queued": queue.queued_count,
            "running": queue.running_job is not None,
        }

    return app


def main() -> None:
    """Run the API server with uvicorn."""
    settings = Settings()  # type: ignore[call-arg]
    uvicorn.run(
        "umrgen.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
