"""Tests for the render backend protocol tracker and client."""

import json

import pytest

from umrgen.services.exceptions import (
    RenderExecutionError,
    RenderSubmissionError,
    RenderTimeoutError,
    RenderUnavailableError,
    UnsafeArtifactError,
)
from umrgen.services.render.client import ArtifactRef, RenderBackendClient, validate_artifact_ref
from umrgen.services.render.protocol import (
    PREVIEW_HEADER,
    CompletionEvent,
    CompletionTracker,
    PreviewEvent,
    ProgressEvent,
    TrackerState,
    decode_message,
    strip_preview_header,
)


def frame(kind: str, **data) -> str:
    return json.dumps({"type": kind, "data": data})


class TestFrames:
    def test_preview_header_stripped(self):
        assert strip_preview_header(PREVIEW_HEADER.pack(1, 2) + b"jpegdata") == b"jpegdata"

    def test_unknown_header_kept(self):
        data = PREVIEW_HEADER.pack(7, 9) + b"payload"
        assert strip_preview_header(data) == data
        assert strip_preview_header(b"short") == b"short"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ('{"type": "status", "data": {}}', {"type": "status", "data": {}}),
            (b'{"type": "status"}', {"type": "status"}),
            ("[1, 2]", None),
            ("not json", None),
            ("{broken", None),
            (b"\x89PNG\r\n", None),
        ],
    )
    def test_decode_message(self, raw, expected):
        assert decode_message(raw) == expected


class TestCompletionTracker:
    def test_frames_before_ack_are_replayed(self):
        tracker = CompletionTracker()

        assert tracker.feed(frame("progress", value=1, max=8, prompt_id="p1")) is None
        assert tracker.state == TrackerState.AWAITING_ACK

        events = tracker.acknowledge("p1")

        assert events == [ProgressEvent(value=1, max=8)]
        assert tracker.state == TrackerState.AWAITING_COMPLETION

    def test_happy_path(self):
        tracker = CompletionTracker()
        tracker.acknowledge("p1")

        assert tracker.feed(frame("execution_start", prompt_id="p1")) is None
        assert tracker.feed(frame("progress", value=4, max=8, prompt_id="p1")) == ProgressEvent(4, 8)
        assert tracker.feed(PREVIEW_HEADER.pack(1, 1) + b"jpeg") == PreviewEvent(b"jpeg")
        assert tracker.feed(frame("executing", node="9", prompt_id="p1")) is None
        assert tracker.feed(frame("executing", node=None, prompt_id="p1")) == CompletionEvent("p1")
        assert tracker.done

        # Everything after completion is ignored
        assert tracker.feed(frame("progress", value=8, max=8, prompt_id="p1")) is None

    def test_execution_success_also_completes(self):
        tracker = CompletionTracker()
        tracker.acknowledge("p1")
        assert tracker.feed(frame("execution_success", prompt_id="p1")) == CompletionEvent("p1")

    def test_other_prompts_ignored(self):
        tracker = CompletionTracker()
        tracker.acknowledge("p1")

        assert tracker.feed(frame("progress", value=1, max=2, prompt_id="other")) is None
        assert tracker.feed(frame("executing", node=None, prompt_id="other")) is None
        assert tracker.feed(frame("execution_error", prompt_id="other")) is None
        assert not tracker.done

    def test_unparseable_text_frame_ignored(self):
        tracker = CompletionTracker()
        tracker.acknowledge("p1")
        assert tracker.feed("garbage") is None

    @pytest.mark.parametrize("kind", ["execution_error", "execution_interrupted"])
    def test_failures_raise(self, kind):
        tracker = CompletionTracker()
        tracker.acknowledge("p1")

        with pytest.raises(RenderExecutionError):
            tracker.feed(frame(kind, prompt_id="p1", node_type="KSampler", exception_message="OOM"))
        assert tracker.done

    def test_buffered_failure_raises_on_ack(self):
        tracker = CompletionTracker()
        tracker.feed(frame("execution_error", prompt_id="p1", exception_message="bad graph"))

        with pytest.raises(RenderExecutionError):
            tracker.acknowledge("p1")

    def test_acknowledge_only_once(self):
        tracker = CompletionTracker()
        tracker.acknowledge("p1")
        with pytest.raises(ValueError):
            tracker.acknowledge("p2")


class TestArtifactRefs:
    def test_valid_ref(self):
        ref = validate_artifact_ref("umrgen_00001_.png", "umrgen/job", "output")
        assert ref == ArtifactRef("umrgen_00001_.png", "umrgen/job", "output")
        assert ref.extension == "png"

    @pytest.mark.parametrize(
        "filename,subfolder,type_",
        [
            ("../secrets.png", "", "output"),
            ("/etc/passwd", "", "output"),
            ("a\\b.png", "", "output"),
            ("x.png", "../../", "output"),
            ("x.png", "/abs", "output"),
            ("x.png", "a//b", "output"),
            ("x.png", "", "input"),
            ("", "", "output"),
            (None, "", "output"),
            ("x y.png", "", "output"),
        ],
    )
    def test_unsafe_refs(self, filename, subfolder, type_):
        with pytest.raises(UnsafeArtifactError):
            validate_artifact_ref(filename, subfolder, type_)

    @pytest.mark.asyncio
    async def test_fetch_artifact_revalidates(self, render_backend):
        client = render_backend.client()
        with pytest.raises(UnsafeArtifactError):
            await client.fetch_artifact(ArtifactRef("../../config.yaml", "", "output"))


@pytest.mark.asyncio
class TestRenderBackendClient:
    async def test_submit_wait_fetch(self, render_backend):
        client = render_backend.client()
        events = []

        submission = await client.submit({"1": {"class_type": "Noop", "inputs": {}}})
        refs = await client.wait_for_completion(submission, on_progress=events.append)

        assert submission.submission_id == "prompt-1"
        assert render_backend.graphs == [{"1": {"class_type": "Noop", "inputs": {}}}]
        assert render_backend.prompt_channels["prompt-1"] == submission.channel_id
        assert events == [ProgressEvent(1, 2), PreviewEvent(b"preview")]
        assert refs == [ArtifactRef("prompt-1_00001_.png", "umrgen", "output")]
        assert render_backend.channels[submission.channel_id].closed

        data = await client.fetch_artifact(refs[0])
        assert data.startswith(b"\x89PNG")

    async def test_rejected_submission_closes_channel(self, render_backend):
        render_backend.reject_next = 400
        client = render_backend.client()

        with pytest.raises(RenderSubmissionError):
            await client.submit({})

        (channel,) = render_backend.channels.values()
        assert channel.closed

    async def test_unreachable_backend(self, render_backend):
        render_backend.reachable = False
        client = render_backend.client()

        with pytest.raises(RenderUnavailableError):
            await client.submit({})
        assert await client.ping() is False

    async def test_execution_error(self, render_backend):
        render_backend.auto_complete = False
        client = render_backend.client()
        submission = await client.submit({})

        render_backend.fail(submission.submission_id, "CUDA out of memory")

        with pytest.raises(RenderExecutionError, match="CUDA out of memory"):
            await client.wait_for_completion(submission)
        assert render_backend.channels[submission.channel_id].closed

    async def test_timeout_closes_channel(self, render_backend):
        render_backend.auto_complete = False
        client = render_backend.client(render_timeout=0.05)
        submission = await client.submit({})

        with pytest.raises(RenderTimeoutError):
            await client.wait_for_completion(submission)
        assert render_backend.channels[submission.channel_id].closed

    async def test_ping(self, render_backend):
        assert await render_backend.client().ping() is True

    async def test_ws_url_derived_from_base_url(self):
        assert RenderBackendClient("https://gpu.example.com/").ws_url == "wss://gpu.example.com"
        assert RenderBackendClient("http://127.0.0.1:8188").ws_url == "ws://127.0.0.1:8188"
