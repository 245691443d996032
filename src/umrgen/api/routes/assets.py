"""Session custom model (LoRA) API endpoints.

- GET /api/sessions/{session_id}/assets - List the session's models
- POST /api/sessions/{session_id}/assets - Upload a model (multipart ``file``)
- DELETE /api/sessions/{session_id}/assets/{name} - Remove a model
- POST /api/sessions/{session_id}/assets/import - Import a model from a public URL
- GET /api/sessions/{session_id}/assets/import - Progress of the current import
"""

from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, File, Response, UploadFile, status
from pydantic import BaseModel, Field

from umrgen.api.dependencies import get_asset_store
from umrgen.services.assets.store import ImportTarget, SessionAssetStore
from umrgen.services.exceptions import ServiceError

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/sessions", tags=["assets"])

UPLOAD_CHUNK_BYTES = 1024 * 1024


class AssetListResponse(BaseModel):
    session_id: str
    assets: list[str]


class AssetResponse(BaseModel):
    name: str


class ImportRequest(BaseModel):
    """Request model for importing a model file from a public URL."""

    url: str = Field(..., description="http(s) URL of a .safetensors file")
    name: Optional[str] = Field(default=None, description="Target name (defaults to URL filename)")


class ImportProgressResponse(BaseModel):
    status: str = Field(..., description="idle, downloading, completed or failed")
    name: Optional[str] = None
    bytes: int = 0
    total: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None


async def _iter_upload(file: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        yield chunk


async def _run_import_in_background(store: SessionAssetStore, target: ImportTarget) -> None:
    try:
        await store.run_import(target)
    except ServiceError as e:
        # Failure is recorded on the session's ImportProgress for polling
        logger.info(
            "asset.import.aborted",
            session_id=target.session_id,
            name=target.name,
            reason=e.reason,
        )
    except Exception as e:
        logger.error(
            "asset.import.crashed",
            session_id=target.session_id,
            name=target.name,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )


@router.get("/{session_id}/assets", response_model=AssetListResponse)
async def list_assets(
    session_id: str,
    store: SessionAssetStore = Depends(get_asset_store),
) -> AssetListResponse:
    return AssetListResponse(session_id=session_id, assets=store.list_assets(session_id))


@router.post(
    "/{session_id}/assets", response_model=AssetResponse, status_code=status.HTTP_201_CREATED
)
async def upload_asset(
    session_id: str,
    file: UploadFile = File(...),
    store: SessionAssetStore = Depends(get_asset_store),
) -> AssetResponse:
    """Upload a custom model. The stored name is sanitized and forced to .safetensors."""
    try:
        name = await store.upload(session_id, file.filename or "", _iter_upload(file))
    finally:
        await file.close()
    return AssetResponse(name=name)


@router.delete("/{session_id}/assets/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_asset(
    session_id: str,
    name: str,
    store: SessionAssetStore = Depends(get_asset_store),
) -> Response:
    store.delete_asset(session_id, name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{session_id}/assets/import",
    response_model=AssetResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def import_asset(
    session_id: str,
    body: ImportRequest,
    background_tasks: BackgroundTasks,
    store: SessionAssetStore = Depends(get_asset_store),
) -> AssetResponse:
    """Start a URL import.

    URL validation and the SSRF guard run before the response is sent; the
    download itself runs in the background. Poll GET .../assets/import.
    """
    target = await store.prepare_import(session_id, body.url, body.name)
    background_tasks.add_task(_run_import_in_background, store, target)
    logger.info("asset.import.started", session_id=session_id, name=target.name)
    return AssetResponse(name=target.name)


@router.get("/{session_id}/assets/import", response_model=ImportProgressResponse)
async def get_import_progress(
    session_id: str,
    store: SessionAssetStore = Depends(get_asset_store),
) -> ImportProgressResponse:
    progress = store.import_progress(session_id)
    if progress is None:
        return ImportProgressResponse(status="idle")
    return ImportProgressResponse(
        status=progress.status,
        name=progress.name,
        bytes=progress.bytes,
        total=progress.total,
        error=progress.error,
        reason=progress.reason,
    )
