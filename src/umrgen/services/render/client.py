"""Render backend client (node-graph execution service).

Submission protocol:
1. Open the progress channel ``ws(s)://<backend>/ws?clientId=<channel_id>``
2. POST ``/prompt`` with ``{"prompt": graph, "client_id": channel_id}``
3. Follow the channel until the backend reports the prompt finished
4. GET ``/history/<prompt_id>`` and collect the produced images
5. GET ``/view`` to download each image

The channel is opened before the POST so no progress frame is missed.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import httpx
import structlog
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from umrgen.services.exceptions import (
    RenderExecutionError,
    RenderSubmissionError,
    RenderTimeoutError,
    RenderUnavailableError,
    UnsafeArtifactError,
)
from umrgen.services.render.protocol import (
    CompletionTracker,
    PreviewEvent,
    ProgressEvent,
    TrackerEvent,
)

logger = structlog.get_logger(__name__)

ALLOWED_ARTIFACT_TYPES = ("output", "temp")
_ARTIFACT_PATH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]*$")

ProgressCallback = Callable[[TrackerEvent], None]
Connector = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class Submission:
    """Handle of a graph accepted by the backend."""

    submission_id: str
    channel_id: str


@dataclass(frozen=True)
class ArtifactRef:
    """Location of one produced image on the backend."""

    filename: str
    subfolder: str = ""
    type: str = "output"

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot else "png"


def _validate_path_part(value: Any, field_name: str, allow_empty: bool) -> str:
    if not isinstance(value, str):
        raise UnsafeArtifactError(f"Artifact {field_name} is not a string")
    if not value:
        if allow_empty:
            return value
        raise UnsafeArtifactError(f"Artifact {field_name} is empty")
    if not _ARTIFACT_PATH_PATTERN.fullmatch(value):
        raise UnsafeArtifactError(f"Artifact {field_name} contains disallowed characters")
    if value.startswith("/"):
        raise UnsafeArtifactError(f"Artifact {field_name} is an absolute path")
    if any(part in ("", ".", "..") for part in value.split("/")):
        raise UnsafeArtifactError(f"Artifact {field_name} contains path traversal")
    return value


def validate_artifact_ref(filename: Any, subfolder: Any = "", type: Any = "output") -> ArtifactRef:
    """Build an ArtifactRef from untrusted backend data.

    Raises:
        UnsafeArtifactError: On traversal, absolute paths, odd characters or unknown type
    """
    filename = _validate_path_part(filename, "filename", allow_empty=False)
    subfolder = _validate_path_part(subfolder or "", "subfolder", allow_empty=True)
    if type not in ALLOWED_ARTIFACT_TYPES:
        raise UnsafeArtifactError(f"Artifact type '{type}' is not allowed")
    return ArtifactRef(filename=filename, subfolder=subfolder, type=type)


class RenderBackendClient:
    """Async client for the render backend's HTTP + WebSocket API."""

    def __init__(
        self,
        base_url: str,
        ws_url: Optional[str] = None,
        submit_timeout: float = 30.0,
        render_timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Optional[Connector] = None,
    ):
        """Initialize render backend client.

        Args:
            base_url: HTTP base URL of the backend (e.g. http://127.0.0.1:8188)
            ws_url: WebSocket base URL (derived from base_url when omitted)
            submit_timeout: Timeout for HTTP requests (seconds)
            render_timeout: Hard limit for one render to complete (seconds)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            connect: Optional coroutine function opening a WebSocket channel
        """
        self.base_url = base_url.rstrip("/")
        if ws_url is None:
            ws_url = re.sub(r"^http", "ws", self.base_url)
        self.ws_url = ws_url.rstrip("/")
        self.submit_timeout = submit_timeout
        self.render_timeout = render_timeout
        self._transport = transport
        self._connect = connect or self._default_connect
        self._channels: dict[str, Any] = {}

    async def _default_connect(self, uri: str) -> Any:
        return await websocket_connect(uri, open_timeout=self.submit_timeout, max_size=None)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.submit_timeout, transport=self._transport
        )

    async def _close_channel(self, channel_id: str) -> None:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return
        try:
            await channel.close()
        except (OSError, WebSocketException) as e:
            logger.debug("render.channel_close_failed", channel_id=channel_id, error=str(e))

    async def submit(self, graph: dict) -> Submission:
        """Open a progress channel and submit a graph.

        Returns:
            Submission with the backend's prompt id and our channel id

        Raises:
            RenderUnavailableError: Backend unreachable (channel or HTTP)
            RenderSubmissionError: Backend answered non-2xx or reported node errors
        """
        channel_id = uuid4().hex
        try:
            channel = await self._connect(f"{self.ws_url}/ws?clientId={channel_id}")
        except (OSError, TimeoutError, WebSocketException) as e:
            raise RenderUnavailableError(f"Progress channel could not be opened: {e}") from e
        self._channels[channel_id] = channel

        try:
            async with self._http() as client:
                response = await client.post(
                    "/prompt", json={"prompt": graph, "client_id": channel_id}
                )

            if not response.is_success:
                raise RenderSubmissionError(
                    f"Backend rejected graph: HTTP {response.status_code} - {response.text[:200]}"
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise RenderSubmissionError("Backend returned invalid JSON") from e

            if payload.get("node_errors"):
                raise RenderSubmissionError(
                    f"Backend reported node errors: {list(payload['node_errors'])}"
                )

            prompt_id = payload.get("prompt_id")
            if not prompt_id:
                raise RenderSubmissionError("Backend response has no prompt_id")

        except httpx.TimeoutException as e:
            await self._close_channel(channel_id)
            raise RenderUnavailableError(f"Submission timed out: {e}") from e
        except httpx.HTTPError as e:
            await self._close_channel(channel_id)
            raise RenderUnavailableError(f"Backend unreachable: {e}") from e
        except BaseException:
            await self._close_channel(channel_id)
            raise

        logger.info(
            "render.submitted", prompt_id=prompt_id, channel_id=channel_id, nodes=len(graph)
        )
        return Submission(submission_id=str(prompt_id), channel_id=channel_id)

    async def _follow(
        self,
        channel: Any,
        tracker: CompletionTracker,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        while not tracker.done:
            frame = await channel.recv()
            event = tracker.feed(frame)
            if event is not None and on_progress is not None and not tracker.done:
                on_progress(event)

    async def wait_for_completion(
        self,
        submission: Submission,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[ArtifactRef]:
        """Follow the progress channel until the prompt finishes.

        Args:
            submission: Handle returned by ``submit``
            on_progress: Called with ProgressEvent / PreviewEvent as they arrive

        Returns:
            Validated references to every image the graph produced

        Raises:
            RenderTimeoutError: Hard timeout exceeded
            RenderExecutionError: Backend reported an error or interruption
            RenderUnavailableError: Channel closed unexpectedly
            UnsafeArtifactError: History contains an invalid artifact reference
        """
        channel = self._channels.get(submission.channel_id)
        if channel is None:
            raise RenderExecutionError(f"No open channel for submission {submission.submission_id}")

        tracker = CompletionTracker()
        try:
            for event in tracker.acknowledge(submission.submission_id):
                if on_progress is not None and isinstance(event, (ProgressEvent, PreviewEvent)):
                    on_progress(event)

            await asyncio.wait_for(
                self._follow(channel, tracker, on_progress), timeout=self.render_timeout
            )
        except TimeoutError as e:
            logger.warning(
                "render.timeout",
                prompt_id=submission.submission_id,
                timeout_seconds=self.render_timeout,
            )
            raise RenderTimeoutError(
                f"Render did not complete within {self.render_timeout:.0f} seconds"
            ) from e
        except ConnectionClosed as e:
            raise RenderUnavailableError(f"Progress channel closed: {e}") from e
        finally:
            await self._close_channel(submission.channel_id)

        return await self.fetch_history(submission.submission_id)

    async def fetch_history(self, prompt_id: str) -> list[ArtifactRef]:
        """Collect and validate the image outputs recorded for a prompt."""
        try:
            async with self._http() as client:
                response = await client.get(f"/history/{prompt_id}")
        except httpx.HTTPError as e:
            raise RenderUnavailableError(f"History request failed: {e}") from e

        if not response.is_success:
            raise RenderExecutionError(f"History request failed: HTTP {response.status_code}")

        try:
            history = response.json()
        except ValueError as e:
            raise RenderExecutionError("History response is not valid JSON") from e

        entry = history.get(prompt_id) if isinstance(history, dict) else None
        if not isinstance(entry, dict):
            raise RenderExecutionError(f"No history recorded for prompt {prompt_id}")

        artifacts = []
        for node_output in (entry.get("outputs") or {}).values():
            for image in node_output.get("images", []):
                artifacts.append(
                    validate_artifact_ref(
                        image.get("filename"), image.get("subfolder", ""), image.get("type")
                    )
                )

        if not artifacts:
            raise RenderExecutionError(f"Prompt {prompt_id} produced no images")
        return artifacts

    async def fetch_artifact(self, ref: ArtifactRef) -> bytes:
        """Download one artifact. The reference is validated again first."""
        ref = validate_artifact_ref(ref.filename, ref.subfolder, ref.type)
        try:
            async with self._http() as client:
                response = await client.get(
                    "/view",
                    params={"filename": ref.filename, "subfolder": ref.subfolder, "type": ref.type},
                )
        except httpx.HTTPError as e:
            raise RenderUnavailableError(f"Artifact download failed: {e}") from e

        if not response.is_success:
            raise RenderExecutionError(
                f"Artifact download failed: HTTP {response.status_code} for {ref.filename}"
            )
        return response.content

    async def ping(self) -> bool:
        """Return True when the backend answers its stats endpoint."""
        try:
            async with self._http() as client:
                response = await client.get("/system_stats")
        except httpx.HTTPError as e:
            logger.debug("render.ping_failed", error=str(e))
            return False
        return response.is_success

    async def close(self) -> None:
        """Close every open progress channel."""
        for channel_id in list(self._channels):
            await self._close_channel(channel_id)
