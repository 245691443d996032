"""Job entity - one generation request with lifecycle status tracking."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from umrgen.models.tier import Tier


class JobState(str, Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class PostProcessing(BaseModel):
    """Optional image adjustments. Zero means "leave the image alone"."""

    model_config = ConfigDict(frozen=True)

    exposure: float = Field(default=0.0, ge=-2.0, le=2.0)
    contrast: float = Field(default=0.0, ge=-1.0, le=1.0)
    saturation: float = Field(default=0.0, ge=-1.0, le=1.0)
    vibrance: float = Field(default=0.0, ge=-1.0, le=1.0)
    sharpen: float = Field(default=0.0, ge=0.0, le=1.0)
    vignette: float = Field(default=0.0, ge=0.0, le=1.0)
    grain: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def color_adjusted(self) -> bool:
        return any((self.exposure, self.contrast, self.saturation, self.vibrance))


class GenerationParameters(BaseModel):
    """Immutable snapshot of a validated generation request."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    negative_prompt: str = ""
    width: int = Field(default=512, ge=64, le=2048)
    height: int = Field(default=512, ge=64, le=2048)
    seed: int = Field(default=0, ge=0)
    lora: Optional[str] = None
    lora_strength: Optional[float] = None
    upscale: bool = False
    upscale_factor: Optional[float] = None
    detail: bool = False
    post: PostProcessing = Field(default_factory=PostProcessing)

    @property
    def uses_premium_features(self) -> bool:
        return bool(self.lora) or self.upscale or self.detail


@dataclass(frozen=True)
class JobOwner:
    """Identity used for per-client concurrency limiting."""

    session_id: str
    client_address: str
    tier: Tier = Tier.FREE


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Job:
    """Lifecycle record of one generation request (process lifetime only)."""

    owner: JobOwner
    parameters: GenerationParameters
    id: str = field(default_factory=lambda: uuid4().hex)
    state: JobState = JobState.QUEUED
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[list[str]] = None
    error: Optional[str] = None
    mounted_asset: Optional[Any] = None
    cancel_requested: bool = False
    _finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def mark_running(self) -> None:
        """Transition from queued to running.

        Raises:
            InvalidStateTransition: If current status is not queued
        """
        if self.state != JobState.QUEUED:
            raise InvalidStateTransition(
                f"Cannot mark running from {self.state.value}. Job must be in queued state."
            )
        self.state = JobState.RUNNING
        self.started_at = _utcnow()

    def mark_completed(self, artifacts: list[str]) -> None:
        """Transition from running to completed.

        Args:
            artifacts: Output artifact references (URL paths)

        Raises:
            InvalidStateTransition: If current status is not running
        """
        if self.state != JobState.RUNNING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.state.value}. Job must be in running state."
            )
        self.result = list(artifacts)
        self._finish(JobState.COMPLETED)

    def mark_failed(self, error: str) -> None:
        """Transition from running to failed.

        Raises:
            InvalidStateTransition: If current status is not running
        """
        if self.state != JobState.RUNNING:
            raise InvalidStateTransition(
                f"Cannot mark failed from {self.state.value}. Job must be in running state."
            )
        self.error = error or "unknown error"
        self._finish(JobState.FAILED)

    def mark_cancelled(self) -> None:
        """Transition from queued or running to cancelled.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.state.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark cancelled from terminal state {self.state.value}."
            )
        self._finish(JobState.CANCELLED)

    def _finish(self, state: JobState) -> None:
        self.state = state
        self.completed_at = _utcnow()
        self._finished.set()

    async def wait(self) -> None:
        """Block until the job reaches a terminal state."""
        await self._finished.wait()

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class JobView(BaseModel):
    """Read-only snapshot of a job, as returned to clients."""

    job_id: str
    state: JobState
    queue_position: Optional[int] = None
    eta_seconds: Optional[float] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[list[str]] = None
    error: Optional[str] = None
    cancel_requested: bool = False
