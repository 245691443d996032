"""Tests for JobQueueManager: admission, scheduling, mounts, ETA and cancellation.

Covers:
- Single runner: the backend never sees two prompts in flight
- FIFO: jobs execute in admission order
- Mount lifetime: the transient LoRA mount exists only while the job runs
- Owner conflict, queue capacity and missing assets at admission
- ETA from the moving average of completed durations
- Cancellation of queued and running jobs
"""

import asyncio

import pytest

from umrgen.models.job import GenerationParameters, JobOwner, JobState
from umrgen.models.tier import Tier
from umrgen.services.exceptions import (
    AssetNotFoundError,
    ClientBusyError,
    JobNotFoundError,
    QueueFullError,
)

MODEL_BYTES = b"\x00lora-weights\x00" * 4


def owner(n: int, tier: Tier = Tier.FREE) -> JobOwner:
    return JobOwner(session_id=f"sid_client{n}", client_address=f"10.0.0.{n}", tier=tier)


def params(prompt: str = "a lighthouse", **overrides) -> GenerationParameters:
    return GenerationParameters(prompt=prompt, seed=42, **overrides)


def job_id_of(graph: dict) -> str:
    for node in graph.values():
        if node["class_type"] == "SaveImage":
            return node["inputs"]["filename_prefix"].rsplit("/", 1)[-1]
    raise AssertionError("graph has no SaveImage node")


async def chunks(data: bytes):
    yield data


@pytest.mark.asyncio
class TestAdmission:
    async def test_submit_queues_job(self, job_queue):
        job = job_queue.submit(params(), owner(1))

        view = job_queue.status(job.id)
        assert view.state == JobState.QUEUED
        assert view.queue_position == 0
        assert job_queue.queued_count == 1

    async def test_same_session_rejected(self, job_queue):
        job_queue.submit(params(), owner(1))
        other_address = JobOwner(session_id="sid_client1", client_address="192.0.2.9")

        with pytest.raises(ClientBusyError) as exc_info:
            job_queue.submit(params(), other_address)
        assert exc_info.value.reason == "client_busy"

    async def test_same_address_rejected(self, job_queue):
        job_queue.submit(params(), owner(1))
        other_session = JobOwner(session_id="sid_someone_else", client_address="10.0.0.1")

        with pytest.raises(ClientBusyError):
            job_queue.submit(params(), other_session)

    async def test_queue_full_checked_first(self, job_queue):
        job_queue.capacity = 2
        job_queue.submit(params(), owner(1))
        job_queue.submit(params(), owner(2))

        # Same owner as an active job, but capacity wins
        with pytest.raises(QueueFullError) as exc_info:
            job_queue.submit(params(), owner(1))
        assert exc_info.value.status_code == 429

    async def test_missing_lora_rejected(self, job_queue):
        with pytest.raises(AssetNotFoundError):
            job_queue.submit(params(lora="ghost.safetensors"), owner(1))
        assert job_queue.queued_count == 0

    async def test_unknown_job(self, job_queue):
        with pytest.raises(JobNotFoundError):
            job_queue.status("does-not-exist")


@pytest.mark.asyncio
class TestScheduling:
    async def test_job_completes_and_persists_artifacts(self, job_queue, run_scheduler, settings):
        job = job_queue.submit(params(), owner(1))
        run_scheduler(job_queue)

        view = await asyncio.wait_for(job_queue.wait(job.id), timeout=2)

        assert view.state == JobState.COMPLETED
        assert len(view.result) == 1
        url = view.result[0]
        assert url.startswith("/api/outputs/sid_client1/")
        filename = url.rsplit("/", 1)[-1]
        assert filename.startswith(job.id[:8])
        assert (settings.output_root / "sid_client1" / filename).read_bytes().startswith(b"\x89PNG")

        history = job_queue.history.entries()
        assert history[0]["job_id"] == job.id
        assert history[0]["state"] == "completed"

    async def test_single_runner_and_fifo(
        self, job_queue, run_scheduler, render_backend, wait_until
    ):
        render_backend.auto_complete = False
        jobs = [job_queue.submit(params(f"prompt {n}"), owner(n)) for n in range(1, 4)]
        run_scheduler(job_queue)

        for expected in range(1, 4):
            await wait_until(lambda: len(render_backend.graphs) == expected)
            # Give the scheduler a chance to (wrongly) start another job
            await asyncio.sleep(0.02)
            assert len(render_backend.graphs) == expected
            assert job_queue.running_job.id == jobs[expected - 1].id
            render_backend.complete()

        for job in jobs:
            assert (await asyncio.wait_for(job_queue.wait(job.id), timeout=2)).state == (
                JobState.COMPLETED
            )

        assert render_backend.max_active == 1
        assert [job_id_of(graph) for graph in render_backend.graphs] == [job.id for job in jobs]

    async def test_mount_exists_only_while_running(
        self, job_queue, run_scheduler, render_backend, asset_store, settings
    ):
        await asset_store.upload("sid_client1", "style.safetensors", chunks(MODEL_BYTES))
        seen_mounts = []
        render_backend.on_submit = lambda graph: seen_mounts.append(
            sorted(p.name for p in settings.backend_lora_dir.iterdir())
        )
        job = job_queue.submit(params(lora="style.safetensors"), owner(1, Tier.PRO))
        run_scheduler(job_queue)

        view = await asyncio.wait_for(job_queue.wait(job.id), timeout=2)

        assert view.state == JobState.COMPLETED
        assert seen_mounts == [[f"umr_sid_client1_{job.id[:12]}_style.safetensors"]]
        assert list(settings.backend_lora_dir.iterdir()) == []
        assert job_queue.get_job(job.id).mounted_asset is None
        lora = next(n for n in render_backend.graphs[0].values() if n["class_type"] == "LoraLoader")
        assert lora["inputs"]["lora_name"] == seen_mounts[0][0]

    async def test_failure_releases_mount_and_frees_runner(
        self, job_queue, run_scheduler, render_backend, asset_store, settings, wait_until
    ):
        await asset_store.upload("sid_client1", "style.safetensors", chunks(MODEL_BYTES))
        render_backend.auto_complete = False
        failing = job_queue.submit(params(lora="style.safetensors"), owner(1, Tier.PRO))
        following = job_queue.submit(params(), owner(2))
        run_scheduler(job_queue)

        await wait_until(lambda: len(render_backend.graphs) == 1)
        render_backend.fail(message="CUDA out of memory")
        view = await asyncio.wait_for(job_queue.wait(failing.id), timeout=2)

        assert view.state == JobState.FAILED
        assert "CUDA out of memory" in view.error
        assert view.result is None
        assert list(settings.backend_lora_dir.iterdir()) == []

        await wait_until(lambda: len(render_backend.graphs) == 2)
        render_backend.complete()
        assert (await asyncio.wait_for(job_queue.wait(following.id), timeout=2)).state == (
            JobState.COMPLETED
        )
        assert job_queue.history.entries()[1]["state"] == "failed"

    async def test_rejected_submission_fails_job(self, job_queue, run_scheduler, render_backend):
        render_backend.reject_next = 400
        job = job_queue.submit(params(), owner(1))
        run_scheduler(job_queue)

        view = await asyncio.wait_for(job_queue.wait(job.id), timeout=2)

        assert view.state == JobState.FAILED
        assert "HTTP 400" in view.error

    async def test_progress_events_reach_subscribers(
        self, job_queue, run_scheduler, broadcaster
    ):
        job = job_queue.submit(params(), owner(1))
        stream = broadcaster.subscribe(job.id)
        run_scheduler(job_queue)

        events = []
        while True:
            event = await asyncio.wait_for(stream.get(), timeout=2)
            events.append(event)
            if event["event"] == "end":
                break

        kinds = [event["event"] for event in events]
        assert kinds == ["state", "progress", "preview", "state", "end"]
        assert events[0]["state"] == "running"
        assert events[1] == {"event": "progress", "value": 1, "max": 2}
        assert events[3]["state"] == "completed"

    async def test_terminal_jobs_purged_after_retention(
        self, job_queue, run_scheduler, wait_until
    ):
        job_queue.retention_seconds = 0.05
        job = job_queue.submit(params(), owner(1))
        run_scheduler(job_queue)
        await asyncio.wait_for(job_queue.wait(job.id), timeout=2)

        def purged():
            try:
                job_queue.status(job.id)
            except JobNotFoundError:
                return True
            return False

        await wait_until(purged)

    async def test_recover_orphaned_running_job(
        self, job_queue, run_scheduler, render_backend, wait_until
    ):
        render_backend.auto_complete = False
        job = job_queue.submit(params(), owner(1))
        task = run_scheduler(job_queue)
        await wait_until(lambda: job_queue.running_job is not None)

        # Simulate a scheduler crash mid-render
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert job_queue.get_job(job.id).state == JobState.RUNNING

        assert job_queue.recover_orphaned() == 1
        view = job_queue.status(job.id)
        assert view.state == JobState.FAILED
        assert view.error == "scheduler restarted"


@pytest.mark.asyncio
class TestEta:
    async def test_eta_with_three_jobs_ahead(self, job_queue):
        jobs = [job_queue.submit(params(), owner(n)) for n in range(1, 5)]

        assert job_queue.jobs_ahead(jobs[3].id) == 3
        assert job_queue.estimate_eta(jobs[3].id) == 4 * job_queue.eta_default_seconds
        assert job_queue.estimate_eta(jobs[0].id) == job_queue.eta_default_seconds

    async def test_average_folds_in_completed_durations(self, job_queue, run_scheduler):
        first = job_queue.submit(params(), owner(1))
        run_scheduler(job_queue)
        await asyncio.wait_for(job_queue.wait(first.id), timeout=2)

        duration = job_queue.get_job(first.id).duration_seconds
        assert job_queue.average_duration() == pytest.approx(duration)
        assert job_queue.average_duration() < job_queue.eta_default_seconds

    async def test_positions_shift_when_job_ahead_leaves(self, job_queue):
        first = job_queue.submit(params(), owner(1))
        second = job_queue.submit(params(), owner(2))

        job_queue.cancel(first.id)

        assert job_queue.status(second.id).queue_position == 0


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_queued_job(self, job_queue, run_scheduler, render_backend):
        cancelled = job_queue.submit(params(), owner(1))
        kept = job_queue.submit(params(), owner(2))

        view = job_queue.cancel(cancelled.id)

        assert view.state == JobState.CANCELLED
        assert view.queue_position is None
        assert job_queue.queued_count == 1

        run_scheduler(job_queue)
        await asyncio.wait_for(job_queue.wait(kept.id), timeout=2)
        assert [job_id_of(graph) for graph in render_backend.graphs] == [kept.id]

    async def test_cancel_running_job_discards_result(
        self, job_queue, run_scheduler, render_backend, settings, wait_until
    ):
        render_backend.auto_complete = False
        job = job_queue.submit(params(), owner(1))
        run_scheduler(job_queue)
        await wait_until(lambda: len(render_backend.graphs) == 1)

        view = job_queue.cancel(job.id)
        assert view.state == JobState.RUNNING
        assert view.cancel_requested is True

        render_backend.complete()
        final = await asyncio.wait_for(job_queue.wait(job.id), timeout=2)

        assert final.state == JobState.CANCELLED
        assert final.result is None
        assert not (settings.output_root / "sid_client1").exists()

    async def test_cancel_terminal_job_is_noop(self, job_queue, run_scheduler):
        job = job_queue.submit(params(), owner(1))
        run_scheduler(job_queue)
        await asyncio.wait_for(job_queue.wait(job.id), timeout=2)

        assert job_queue.cancel(job.id).state == JobState.COMPLETED

    async def test_owner_may_submit_again_after_cancel(self, job_queue):
        job = job_queue.submit(params(), owner(1))
        job_queue.cancel(job.id)

        again = job_queue.submit(params(), owner(1))
        assert again.state == JobState.QUEUED
