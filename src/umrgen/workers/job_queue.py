"""Job queue manager and single-runner scheduler.

Owns the canonical job table and the FIFO queue. Exactly one scheduler task
(``run``) executes jobs, one at a time, because the render backend is a
single GPU worker.

Pipeline per job:
    mount asset -> build graph -> submit -> await completion
    -> persist artifacts -> history -> unmount -> terminal state

All table and queue mutations happen in synchronous methods, so on a single
event loop they never interleave.
"""

import asyncio
import base64
import secrets
import statistics
from collections import deque
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Optional

import structlog

from umrgen.models.job import GenerationParameters, Job, JobOwner, JobState, JobView
from umrgen.services.assets.store import SessionAssetStore
from umrgen.services.exceptions import (
    AssetNotFoundError,
    ClientBusyError,
    JobNotFoundError,
    QueueFullError,
    ServiceError,
)
from umrgen.services.history import HistoryLog
from umrgen.services.pipeline.graph import RenderModels, build_graph
from umrgen.services.progress import ProgressBroadcaster
from umrgen.services.render.client import ArtifactRef, RenderBackendClient
from umrgen.services.render.protocol import PreviewEvent, ProgressEvent, TrackerEvent

logger = structlog.get_logger(__name__)

ALLOWED_OUTPUT_EXTENSIONS = ("png", "jpg", "jpeg", "webp")
OUTPUT_URL_PREFIX = "/api/outputs"


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class JobQueueManager:
    """Admission, scheduling, execution and bookkeeping of generation jobs."""

    def __init__(
        self,
        asset_store: SessionAssetStore,
        render_client: RenderBackendClient,
        broadcaster: ProgressBroadcaster,
        models: RenderModels,
        output_root: Path,
        history: Optional[HistoryLog] = None,
        capacity: int = 20,
        retention_seconds: float = 300.0,
        eta_default_seconds: float = 30.0,
        eta_window: int = 10,
    ):
        """Initialize job queue manager.

        Args:
            asset_store: Session asset store (mount/unmount of custom LoRAs)
            render_client: Render backend client
            broadcaster: Progress fan-out
            models: Model names used by the graph builder
            output_root: Root directory for persisted artifacts
            history: Optional history log appended after each executed job
            capacity: Maximum number of queued jobs
            retention_seconds: How long terminal jobs stay queryable
            eta_default_seconds: Assumed job duration before any completion
            eta_window: Number of recent durations in the moving average
        """
        self.asset_store = asset_store
        self.render_client = render_client
        self.broadcaster = broadcaster
        self.models = models
        self.output_root = Path(output_root)
        self.history = history
        self.capacity = capacity
        self.retention_seconds = retention_seconds
        self.eta_default_seconds = eta_default_seconds

        self._jobs: dict[str, Job] = {}
        self._queue: deque[str] = deque()
        self._durations: deque[float] = deque(maxlen=eta_window)
        self._wakeup = asyncio.Event()
        self._purge_handles: dict[str, asyncio.TimerHandle] = {}

    # Admission

    def _active_jobs(self) -> list[Job]:
        return [job for job in self._jobs.values() if not job.state.is_terminal]

    def submit(self, parameters: GenerationParameters, owner: JobOwner) -> Job:
        """Admit a job to the queue.

        Raises:
            QueueFullError: Queue is at capacity
            ClientBusyError: Owner (session or address) already has an active job
            AssetNotFoundError: Referenced LoRA missing from the owner's store
        """
        if len(self._queue) >= self.capacity:
            raise QueueFullError(f"Queue is full ({self.capacity} jobs waiting)")

        for other in self._active_jobs():
            if (
                other.owner.session_id == owner.session_id
                or other.owner.client_address == owner.client_address
            ):
                raise ClientBusyError("You already have a generation in progress")

        if parameters.lora and not self.asset_store.has_asset(owner.session_id, parameters.lora):
            raise AssetNotFoundError(f"Custom model '{parameters.lora}' not found in session")

        job = Job(owner=owner, parameters=parameters)
        self._jobs[job.id] = job
        self._queue.append(job.id)
        self._wakeup.set()

        logger.info(
            "job.admitted",
            job_id=job.id,
            session_id=owner.session_id,
            tier=owner.tier.value,
            position=len(self._queue) - 1,
            prompt_chars=len(parameters.prompt),
            lora=parameters.lora,
        )
        self._publish_state(job)
        return job

    # Queries

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def jobs_ahead(self, job_id: str) -> Optional[int]:
        """0-based position among queued jobs, or None when not queued."""
        try:
            return self._queue.index(job_id)
        except ValueError:
            return None

    def average_duration(self) -> float:
        if not self._durations:
            return self.eta_default_seconds
        return statistics.fmean(self._durations)

    def _eta(self, job: Job) -> Optional[float]:
        average = self.average_duration()
        if job.state == JobState.QUEUED:
            position = self.jobs_ahead(job.id)
            if position is None:
                return None
            return (position + 1) * average
        if job.state == JobState.RUNNING and job.started_at is not None:
            elapsed = (datetime.now(UTC) - job.started_at).total_seconds()
            return max(average - elapsed, 0.0)
        return None

    def estimate_eta(self, job_id: str) -> Optional[float]:
        return self._eta(self._get(job_id))

    def view(self, job: Job) -> JobView:
        eta = self._eta(job)
        return JobView(
            job_id=job.id,
            state=job.state,
            queue_position=self.jobs_ahead(job.id) if job.state == JobState.QUEUED else None,
            eta_seconds=round(eta, 1) if eta is not None else None,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            result=job.result,
            error=job.error,
            cancel_requested=job.cancel_requested,
        )

    def status(self, job_id: str) -> JobView:
        """Raises JobNotFoundError for unknown or purged jobs."""
        return self.view(self._get(job_id))

    def get_job(self, job_id: str) -> Job:
        return self._get(job_id)

    @property
    def running_job(self) -> Optional[Job]:
        for job in self._jobs.values():
            if job.state == JobState.RUNNING:
                return job
        return None

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    async def wait(self, job_id: str) -> JobView:
        """Block until the job is terminal and return its final view."""
        job = self._get(job_id)
        await job.wait()
        return self.view(job)

    # Cancellation

    def cancel(self, job_id: str) -> JobView:
        """Cancel a job.

        Queued jobs are cancelled immediately. Running jobs are flagged; the
        scheduler discards their result and cancels them once the render
        returns and the asset is unmounted. Terminal jobs are left alone.
        """
        job = self._get(job_id)

        if job.state == JobState.QUEUED:
            self._queue.remove(job.id)
            job.mark_cancelled()
            logger.info("job.cancelled", job_id=job.id, while_state="queued")
            self._publish_state(job)
            self.broadcaster.close(job.id)
            self._schedule_purge(job)

        elif job.state == JobState.RUNNING and not job.cancel_requested:
            job.cancel_requested = True
            logger.info("job.cancel_requested", job_id=job.id)
            self._publish_state(job)

        return self.view(job)

    # Scheduler

    async def run(self) -> None:
        """Scheduler loop: run queued jobs one at a time, forever."""
        self.recover_orphaned()
        logger.info("scheduler.started", queued=len(self._queue))

        while True:
            while self._queue:
                job = self._jobs.get(self._queue.popleft())
                if job is None or job.state != JobState.QUEUED:
                    continue
                await self._execute(job)

            self._wakeup.clear()
            if not self._queue:
                await self._wakeup.wait()

    def recover_orphaned(self) -> int:
        """Fail jobs left ``running`` by a crashed scheduler and release their mounts."""
        recovered = 0
        for job in list(self._jobs.values()):
            if job.state != JobState.RUNNING:
                continue
            self._release_mount(job)
            job.mark_failed("scheduler restarted")
            logger.warning("job.recovered", job_id=job.id)
            self._finalize(job)
            recovered += 1
        return recovered

    def _release_mount(self, job: Job) -> None:
        if job.mounted_asset is None:
            return
        try:
            self.asset_store.unmount(job.mounted_asset)
        except OSError as e:
            logger.error("asset.unmount_failed", job_id=job.id, error=str(e))
        job.mounted_asset = None

    async def _execute(self, job: Job) -> None:
        job.mark_running()
        self._publish_state(job)
        logger.info("job.started", job_id=job.id, session_id=job.owner.session_id)

        artifacts: list[str] = []
        error: Optional[str] = None
        try:
            lora_name = None
            if job.parameters.lora:
                job.mounted_asset = self.asset_store.mount(
                    job.owner.session_id, job.parameters.lora, job.id
                )
                lora_name = job.mounted_asset.transient_name

            graph = build_graph(job.parameters, self.models, lora_name=lora_name, job_id=job.id)
            submission = await self.render_client.submit(graph)
            refs = await self.render_client.wait_for_completion(
                submission, on_progress=partial(self._on_render_event, job.id)
            )

            if not job.cancel_requested:
                artifacts = await self._persist_artifacts(job, refs)

        except ServiceError as e:
            error = e.message
            logger.warning("job.failed", job_id=job.id, reason=e.reason, error=e.message)

        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(
                "job.failed",
                job_id=job.id,
                error=error,
                error_type=type(e).__name__,
                exc_info=True,
            )

        finally:
            self._release_mount(job)

        if job.cancel_requested:
            final_state = JobState.CANCELLED
        elif error is not None:
            final_state = JobState.FAILED
        else:
            final_state = JobState.COMPLETED

        self._append_history(job, final_state, artifacts, error)

        if final_state == JobState.CANCELLED:
            job.mark_cancelled()
            logger.info("job.cancelled", job_id=job.id, while_state="running")
        elif final_state == JobState.FAILED:
            job.mark_failed(error)
        else:
            job.mark_completed(artifacts)
            logger.info(
                "job.completed",
                job_id=job.id,
                artifacts=len(artifacts),
                duration_seconds=job.duration_seconds,
            )

        self._finalize(job)

    def _finalize(self, job: Job) -> None:
        if job.duration_seconds is not None:
            self._durations.append(job.duration_seconds)
        self._publish_state(job)
        self.broadcaster.close(job.id)
        self._schedule_purge(job)

    async def _persist_artifacts(self, job: Job, refs: list[ArtifactRef]) -> list[str]:
        session_id = job.owner.session_id
        session_dir = self.output_root / session_id
        paths = []
        for index, ref in enumerate(refs):
            data = await self.render_client.fetch_artifact(ref)
            extension = ref.extension if ref.extension in ALLOWED_OUTPUT_EXTENSIONS else "png"
            filename = f"{job.id[:8]}_{secrets.token_hex(4)}_{index}.{extension}"
            await asyncio.to_thread(_write_file, session_dir / filename, data)
            paths.append(f"{OUTPUT_URL_PREFIX}/{session_id}/{filename}")
        return paths

    def _append_history(
        self, job: Job, state: JobState, artifacts: list[str], error: Optional[str]
    ) -> None:
        if self.history is None:
            return
        params = job.parameters
        entry = {
            "job_id": job.id,
            "session_id": job.owner.session_id,
            "state": state.value,
            "prompt": params.prompt,
            "seed": params.seed,
            "width": params.width,
            "height": params.height,
            "lora": params.lora,
            "upscale": params.upscale,
            "detail": params.detail,
            "artifacts": artifacts,
            "error": error,
            "created_at": job.created_at.isoformat(),
            "finished_at": datetime.now(UTC).isoformat(),
        }
        try:
            self.history.append(entry)
        except OSError as e:
            logger.error("history.append_failed", job_id=job.id, error=str(e))

    # Events

    def _on_render_event(self, job_id: str, event: TrackerEvent) -> None:
        if isinstance(event, ProgressEvent):
            self.broadcaster.publish(
                job_id, {"event": "progress", "value": event.value, "max": event.max}
            )
        elif isinstance(event, PreviewEvent):
            self.broadcaster.publish(
                job_id,
                {"event": "preview", "image": base64.b64encode(event.data).decode("ascii")},
            )

    def _publish_state(self, job: Job) -> None:
        self.broadcaster.publish(
            job.id,
            {"event": "state", **self.view(job).model_dump(mode="json")},
        )

    # Retention

    def _schedule_purge(self, job: Job) -> None:
        loop = asyncio.get_running_loop()
        self._purge_handles[job.id] = loop.call_later(
            self.retention_seconds, self._purge, job.id
        )

    def _purge(self, job_id: str) -> None:
        self._purge_handles.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.state.is_terminal:
            del self._jobs[job_id]
            logger.debug("job.purged", job_id=job_id)

    def shutdown(self) -> None:
        """Cancel pending purge timers."""
        for handle in self._purge_handles.values():
            handle.cancel()
        self._purge_handles.clear()
