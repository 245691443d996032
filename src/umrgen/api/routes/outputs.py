"""Generated output, history and backend status endpoints.

- GET /api/outputs/{session_id}/{filename} - Serve a persisted artifact
- GET /api/history?session_id= - Recent generations of a session
- GET /api/generator/ping - Render backend reachability
"""

import re

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse

from umrgen.api.dependencies import get_history, get_job_queue, get_render_client, get_settings
from umrgen.core.config import Settings
from umrgen.services.assets.store import validate_session_id
from umrgen.services.exceptions import InvalidFilenameError, OutputNotFoundError
from umrgen.services.history import HistoryLog
from umrgen.services.render.client import RenderBackendClient
from umrgen.workers.job_queue import JobQueueManager

router = APIRouter(prefix="/api", tags=["outputs"])

OUTPUT_FILENAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}\.(png|jpg|jpeg|webp)$")
MEDIA_TYPES = {"png": "image/png", "jpg": "image/jpeg", "jpeg": "image/jpeg", "webp": "image/webp"}


@router.get("/outputs/{session_id}/{filename}")
async def get_output(
    session_id: str,
    filename: str,
    settings: Settings = Depends(get_settings),
) -> FileResponse:
    """Serve one artifact. Only plain image filenames inside the session directory."""
    validate_session_id(session_id)
    match = OUTPUT_FILENAME_PATTERN.fullmatch(filename)
    if match is None:
        raise InvalidFilenameError(f"Invalid output filename '{filename}'")

    path = settings.output_root / session_id / filename
    if not path.is_file():
        raise OutputNotFoundError(f"Output {filename} not found")
    return FileResponse(path, media_type=MEDIA_TYPES[match.group(1)])


@router.get("/history")
async def get_history_entries(
    session_id: str = Query(..., description="Session whose history to return"),
    limit: int = Query(default=20, ge=1, le=100),
    history: HistoryLog = Depends(get_history),
) -> dict:
    validate_session_id(session_id)
    return {"session_id": session_id, "entries": history.entries(session_id, limit=limit)}


@router.get("/generator/ping")
async def ping_generator(
    render_client: RenderBackendClient = Depends(get_render_client),
    queue: JobQueueManager = Depends(get_job_queue),
) -> dict:
    reachable = await render_client.ping()
    return {
        "render_backend": "reachable" if reachable else "unreachable",
        "queued": queue.queued_count,
        "running": queue.running_job is not None,
        "average_duration_seconds": round(queue.average_duration(), 1),
    }
