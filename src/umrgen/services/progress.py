"""Per-job progress fan-out with backpressure handling.

Event payloads are plain dicts with an ``event`` key:

- ``{"event": "state", "state": "running", ...}``
- ``{"event": "progress", "value": 3, "max": 8}``
- ``{"event": "preview", "image": "<base64>"}``
- ``{"event": "end"}`` (last event of every job)
"""

import asyncio
import json
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

END_EVENT = {"event": "end"}


class ProgressBroadcaster:
    """Publish job events to any number of subscribers.

    Publishing is synchronous so events reach every queue in the order they
    were produced. Slow subscribers lose their oldest buffered event first and
    are dropped when they still cannot keep up.
    """

    def __init__(self, max_buffer: int = 64) -> None:
        self._max_buffer = max_buffer
        self._subscribers: dict[str, set[asyncio.Queue[dict]]] = {}

    def subscribe(self, job_id: str) -> asyncio.Queue[dict]:
        """Register a new subscriber for ``job_id`` and return its queue."""
        queue: asyncio.Queue[dict] = asyncio.Queue(self._max_buffer)
        self._subscribers.setdefault(job_id, set()).add(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[dict]) -> None:
        subscribers = self._subscribers.get(job_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def publish(self, job_id: str, event: dict) -> None:
        """Deliver ``event`` to every subscriber of ``job_id``."""
        subscribers = self._subscribers.get(job_id)
        if not subscribers:
            return

        for queue in list(subscribers):
            if not self._offer(queue, event):
                subscribers.discard(queue)
                logger.warning("progress.subscriber_dropped", job_id=job_id, queue_id=id(queue))

    def close(self, job_id: str) -> None:
        """Publish the end marker and forget the job's subscribers."""
        subscribers = self._subscribers.pop(job_id, None)
        if not subscribers:
            return
        for queue in subscribers:
            self._offer(queue, END_EVENT)

    def _offer(self, queue: asyncio.Queue[dict], event: dict) -> bool:
        """Enqueue without blocking; False means the subscriber must go."""
        try:
            queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            # Drop the oldest item and retry once
            queue.get_nowait()
            try:
                queue.put_nowait(event)
                logger.debug("progress.backpressure", queue_id=id(queue), action="trim")
                return True
            except asyncio.QueueFull:
                return False


def format_sse_chunk(event_name: Optional[str], payload: Any) -> bytes:
    """Encode one Server-Sent Events message."""
    lines: list[bytes] = []
    if event_name:
        lines.append(b"event: " + event_name.encode("utf-8"))
    lines.append(b"data: " + json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return b"\n".join(lines) + b"\n\n"


SSE_KEEPALIVE = b": keepalive\n\n"
