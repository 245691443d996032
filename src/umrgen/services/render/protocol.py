"""Render backend progress-channel protocol.

The backend pushes frames over a WebSocket opened per submission:

- Text frames carry JSON objects ``{"type": ..., "data": {...}}``
  (``status``, ``execution_start``, ``execution_cached``, ``executing``,
  ``progress``, ``executed``, ``execution_success``, ``execution_error``,
  ``execution_interrupted``).
- Binary frames carry preview images. The backend prefixes them with an
  8-byte header: big-endian event type (1 = preview image) followed by the
  image format (1 = JPEG, 2 = PNG).

``CompletionTracker`` consumes frames one by one and turns them into typed
events for a single prompt id.
"""

import json
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from umrgen.services.exceptions import RenderExecutionError

PREVIEW_HEADER = struct.Struct(">II")
PREVIEW_EVENT_TYPES = (1, 2)
PREVIEW_IMAGE_FORMATS = (1, 2)

Frame = Union[str, bytes, bytearray, memoryview]


class TrackerState(str, Enum):
    AWAITING_ACK = "awaiting_ack"
    AWAITING_COMPLETION = "awaiting_completion"
    DONE = "done"


@dataclass(frozen=True)
class ProgressEvent:
    value: int
    max: int


@dataclass(frozen=True)
class PreviewEvent:
    data: bytes


@dataclass(frozen=True)
class CompletionEvent:
    prompt_id: str


TrackerEvent = Union[ProgressEvent, PreviewEvent, CompletionEvent]


def strip_preview_header(data: bytes) -> bytes:
    """Remove the backend's 8-byte preview header when present."""
    if len(data) > PREVIEW_HEADER.size:
        event_type, image_format = PREVIEW_HEADER.unpack_from(data)
        if event_type in PREVIEW_EVENT_TYPES and image_format in PREVIEW_IMAGE_FORMATS:
            return data[PREVIEW_HEADER.size :]
    return data


def decode_message(frame: Frame) -> Optional[dict]:
    """Decode a frame as a JSON object. Returns None for anything else."""
    if isinstance(frame, (bytes, bytearray, memoryview)):
        try:
            text = bytes(frame).decode("utf-8")
        except UnicodeDecodeError:
            return None
    else:
        text = frame

    if not text.lstrip().startswith("{"):
        return None
    try:
        message = json.loads(text)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


class CompletionTracker:
    """State machine following one prompt to completion.

    States:
        awaiting_ack: Submission not yet acknowledged; frames are buffered
        awaiting_completion: Prompt id known; frames are interpreted
        done: Backend reported the prompt finished; further frames are ignored
    """

    def __init__(self):
        self.state = TrackerState.AWAITING_ACK
        self.prompt_id: Optional[str] = None
        self._buffered: list[Frame] = []

    @property
    def done(self) -> bool:
        return self.state == TrackerState.DONE

    def acknowledge(self, prompt_id: str) -> list[TrackerEvent]:
        """Record the backend's prompt id and replay buffered frames.

        Raises:
            RenderExecutionError: If a buffered frame reports a failure
        """
        if self.state != TrackerState.AWAITING_ACK:
            raise ValueError(f"Cannot acknowledge in state {self.state.value}")
        self.prompt_id = prompt_id
        self.state = TrackerState.AWAITING_COMPLETION

        buffered, self._buffered = self._buffered, []
        events = []
        for frame in buffered:
            event = self.feed(frame)
            if event is not None:
                events.append(event)
        return events

    def feed(self, frame: Frame) -> Optional[TrackerEvent]:
        """Interpret one frame.

        Returns:
            The resulting event, or None for frames that carry nothing for us

        Raises:
            RenderExecutionError: On ``execution_error`` / ``execution_interrupted``
        """
        if self.state == TrackerState.DONE:
            return None
        if self.state == TrackerState.AWAITING_ACK:
            self._buffered.append(frame)
            return None

        message = decode_message(frame)
        if message is None:
            if isinstance(frame, str):
                return None
            # Binary preview branch
            return PreviewEvent(data=strip_preview_header(bytes(frame)))

        return self._handle_message(message)

    def _is_ours(self, data: dict) -> bool:
        prompt_id = data.get("prompt_id")
        return prompt_id is None or prompt_id == self.prompt_id

    def _handle_message(self, message: dict) -> Optional[TrackerEvent]:
        kind = message.get("type")
        data = message.get("data")
        if not isinstance(data, dict) or not self._is_ours(data):
            return None

        if kind == "progress":
            try:
                return ProgressEvent(value=int(data.get("value", 0)), max=int(data.get("max", 0)))
            except (TypeError, ValueError):
                return None

        if kind == "executing" and data.get("node") is None and data.get("prompt_id"):
            self.state = TrackerState.DONE
            return CompletionEvent(prompt_id=self.prompt_id)

        if kind == "execution_success":
            self.state = TrackerState.DONE
            return CompletionEvent(prompt_id=self.prompt_id)

        if kind == "execution_error":
            self.state = TrackerState.DONE
            node_type = data.get("node_type") or "unknown node"
            detail = data.get("exception_message") or "execution error"
            raise RenderExecutionError(f"{node_type}: {str(detail).strip()}")

        if kind == "execution_interrupted":
            self.state = TrackerState.DONE
            raise RenderExecutionError("Render was interrupted on the backend")

        return None
