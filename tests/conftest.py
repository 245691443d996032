"""pytest fixtures for UMRGEN tests.

Provides:
- settings: Function-scoped Settings rooted in a temporary directory
- render_backend: Scripted fake render backend (HTTP via httpx.MockTransport,
  progress channel via an injected connect callable)
- asset_store: SessionAssetStore with a public-address resolver
- job_queue: JobQueueManager wired to the fake backend
- app / test_client: FastAPI app with injected services and an AsyncClient
- wait_until: Poll helper for asynchronous conditions
"""

import asyncio
import json
import os
from contextlib import suppress
from typing import AsyncGenerator, Callable, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from umrgen.app import create_app
from umrgen.core.config import Settings
from umrgen.services.assets.store import SessionAssetStore
from umrgen.services.history import HistoryLog
from umrgen.services.pipeline.graph import RenderModels
from umrgen.services.progress import ProgressBroadcaster
from umrgen.services.render.client import RenderBackendClient
from umrgen.services.render.protocol import PREVIEW_HEADER
from umrgen.workers.job_queue import JobQueueManager

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PUBLIC_ADDRESS = "93.184.216.34"


@pytest.fixture(scope="session", autouse=True)
def test_environment():
    """Mark the process as a test environment (skips required-config validation)."""
    os.environ["APP_ENV"] = "test"
    yield


class FakeChannel:
    """In-memory stand-in for a WebSocket progress channel."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    def push(self, frame) -> None:
        self._frames.put_nowait(frame)

    async def recv(self):
        return await self._frames.get()

    async def close(self) -> None:
        self.closed = True


class FakeRenderBackend:
    """Scripted render backend.

    Every POST /prompt is recorded. With ``auto_complete`` the progress channel
    immediately receives progress, preview and completion frames; otherwise
    tests call ``complete()`` / ``fail()`` themselves.
    """

    def __init__(self, auto_complete: bool = True):
        self.auto_complete = auto_complete
        self.channels: dict[str, FakeChannel] = {}
        self.graphs: list[dict] = []
        self.prompt_channels: dict[str, str] = {}
        self.pending: list[str] = []
        self.max_active = 0
        self.reject_next: Optional[int] = None
        self.reachable = True
        self.on_submit: Optional[Callable[[dict], None]] = None

    async def connect(self, uri: str) -> FakeChannel:
        if not self.reachable:
            raise OSError("connection refused")
        client_id = parse_qs(urlsplit(uri).query)["clientId"][0]
        channel = FakeChannel(client_id)
        self.channels[client_id] = channel
        return channel

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if request.method == "POST" and path == "/prompt":
            if self.reject_next is not None:
                status_code, self.reject_next = self.reject_next, None
                return httpx.Response(status_code, json={"error": "invalid prompt"})

            body = json.loads(request.content)
            prompt_id = f"prompt-{len(self.graphs) + 1}"
            self.graphs.append(body["prompt"])
            self.prompt_channels[prompt_id] = body["client_id"]
            self.pending.append(prompt_id)
            self.max_active = max(self.max_active, len(self.pending))
            if self.on_submit is not None:
                self.on_submit(body["prompt"])
            if self.auto_complete:
                self.complete(prompt_id)
            return httpx.Response(200, json={"prompt_id": prompt_id, "number": 1, "node_errors": {}})

        if request.method == "GET" and path.startswith("/history/"):
            prompt_id = path.rsplit("/", 1)[-1]
            outputs = {
                "9": {
                    "images": [
                        {"filename": f"{prompt_id}_00001_.png", "subfolder": "umrgen", "type": "output"}
                    ]
                }
            }
            return httpx.Response(200, json={prompt_id: {"outputs": outputs}})

        if request.method == "GET" and path == "/view":
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

        if request.method == "GET" and path == "/system_stats":
            return httpx.Response(200, json={"system": {}})

        return httpx.Response(404)

    def _channel_for(self, prompt_id: str) -> FakeChannel:
        return self.channels[self.prompt_channels[prompt_id]]

    def complete(self, prompt_id: Optional[str] = None) -> None:
        prompt_id = prompt_id or self.pending[0]
        channel = self._channel_for(prompt_id)
        channel.push(json.dumps({"type": "status", "data": {"status": {}}}))
        channel.push(
            json.dumps({"type": "progress", "data": {"value": 1, "max": 2, "prompt_id": prompt_id}})
        )
        channel.push(PREVIEW_HEADER.pack(1, 2) + b"preview")
        channel.push(
            json.dumps({"type": "executing", "data": {"node": None, "prompt_id": prompt_id}})
        )
        self.pending.remove(prompt_id)

    def fail(self, prompt_id: Optional[str] = None, message: str = "CUDA out of memory") -> None:
        prompt_id = prompt_id or self.pending[0]
        self._channel_for(prompt_id).push(
            json.dumps(
                {
                    "type": "execution_error",
                    "data": {
                        "prompt_id": prompt_id,
                        "node_type": "KSampler",
                        "exception_message": message,
                    },
                }
            )
        )
        self.pending.remove(prompt_id)

    def client(self, render_timeout: float = 5.0) -> RenderBackendClient:
        return RenderBackendClient(
            base_url="http://render.test",
            render_timeout=render_timeout,
            transport=httpx.MockTransport(self.handler),
            connect=self.connect,
        )


async def public_resolver(host: str, port: int) -> list[str]:
    return [PUBLIC_ADDRESS]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    """Return an async helper polling a predicate until it holds."""
    return _wait_until


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Provide settings rooted in a temporary directory."""
    return Settings(
        APP_ENV="test",
        TOKEN_SECRET="test-secret",
        OUTPUT_ROOT=tmp_path / "outputs",
        SESSION_ROOT=tmp_path / "sessions",
        BACKEND_LORA_DIR=tmp_path / "backend_loras",
        MIN_ASSET_BYTES=16,
        MAX_ASSET_BYTES=4096,
        RATE_LIMIT_PER_MINUTE=100,
        PRO_ACTIVATION_KEY="pro-key",
        TRIAL_ACTIVATION_KEY="trial-key",
        TRIAL_USAGE_LIMIT=2,
        _env_file=None,
    )


@pytest.fixture
def render_backend() -> FakeRenderBackend:
    return FakeRenderBackend()


@pytest.fixture
def asset_store(settings) -> SessionAssetStore:
    return SessionAssetStore(
        session_root=settings.session_root,
        backend_lora_dir=settings.backend_lora_dir,
        max_asset_bytes=settings.max_asset_bytes,
        min_asset_bytes=settings.min_asset_bytes,
        resolver=public_resolver,
    )


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@pytest_asyncio.fixture
async def job_queue(
    settings, render_backend, asset_store, broadcaster
) -> AsyncGenerator[JobQueueManager, None]:
    """Provide a JobQueueManager wired to the fake backend (scheduler not started)."""
    queue = JobQueueManager(
        asset_store=asset_store,
        render_client=render_backend.client(),
        broadcaster=broadcaster,
        models=RenderModels.from_settings(settings),
        output_root=settings.output_root,
        history=HistoryLog(settings.output_root),
        capacity=settings.queue_capacity,
        eta_default_seconds=settings.eta_default_seconds,
    )
    yield queue
    queue.shutdown()


@pytest_asyncio.fixture
async def run_scheduler():
    """Start ``queue.run()`` as a task; cancelled at teardown."""
    tasks: list[asyncio.Task] = []

    def start(queue: JobQueueManager) -> asyncio.Task:
        task = asyncio.create_task(queue.run())
        tasks.append(task)
        return task

    yield start

    for task in tasks:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


@pytest_asyncio.fixture
async def app(settings, render_backend, asset_store):
    """Provide the FastAPI app with the fake backend injected."""
    application = create_app(
        settings, render_client=render_backend.client(), asset_store=asset_store
    )
    yield application
    application.state.job_queue.shutdown()


@pytest_asyncio.fixture
async def test_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Provide AsyncClient for testing API endpoints."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
