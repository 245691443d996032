"""Session-scoped custom model (LoRA) storage.

Each client session owns a private directory under ``SESSION_ROOT``. Files in
it are never visible to the render backend directly. While a job runs, the
asset is exposed through a *transient mount*: a uniquely named symlink (or
copy) inside the render backend's global LoRA directory, removed as soon as
the job leaves ``running``.

Security Note:
    Session ids and asset names are validated before any filesystem access.
    URL imports go through the SSRF guard in ``url_guard`` on every redirect
    hop, and partial downloads never survive a failure.
"""

import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, Callable, Optional, Protocol

import httpx
import structlog

from umrgen.services.assets.url_guard import Resolver, check_url, system_resolver
from umrgen.services.exceptions import (
    AssetExistsError,
    AssetNotFoundError,
    AssetTooLargeError,
    AssetTooSmallError,
    DisallowedContentTypeError,
    HtmlPayloadError,
    ImportFailedError,
    ImportInProgressError,
    InvalidFilenameError,
    InvalidSessionError,
    ServiceError,
)

logger = structlog.get_logger(__name__)

SESSION_ID_PATTERN = re.compile(r"^sid_[A-Za-z0-9_-]{1,64}$")
MODEL_EXTENSION = ".safetensors"
MAX_FILENAME_LENGTH = 128
MOUNT_PREFIX = "umr_"
ASSET_SUBDIR = "loras"
MAX_REDIRECTS = 5

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")

BLOCKED_CONTENT_TYPES = ("text/", "application/json", "application/javascript")
BLOCKED_CONTENT_SUFFIXES = ("/html", "+json", "/xml", "+xml")
HTML_SIGNATURES = (b"<!doctype html", b"<html", b"<head", b"<body", b"<script")


def validate_session_id(session_id: str) -> str:
    """Return the session id if it matches the strict grammar.

    Raises:
        InvalidSessionError: If the id is malformed
    """
    if not isinstance(session_id, str) or not SESSION_ID_PATTERN.fullmatch(session_id):
        raise InvalidSessionError("Session id must look like 'sid_<letters, digits, - or _>'")
    # Redundant with the grammar, kept explicit for path safety
    if ".." in session_id or "/" in session_id or "\\" in session_id:
        raise InvalidSessionError("Session id contains path separators")
    return session_id


def sanitize_filename(filename: str) -> str:
    """Coerce an untrusted filename into a safe model file name.

    Path components are dropped, characters outside ``[A-Za-z0-9._-]`` become
    ``_``, leading dots are removed, the ``.safetensors`` extension is enforced
    and the result is truncated to ``MAX_FILENAME_LENGTH``.

    Raises:
        InvalidFilenameError: If nothing usable remains
    """
    base = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base).lstrip(".")

    if cleaned.lower().endswith(MODEL_EXTENSION):
        cleaned = cleaned[: -len(MODEL_EXTENSION)]
    stem = cleaned.rstrip(".")

    if not stem.strip("_-."):
        raise InvalidFilenameError(f"Filename '{filename}' has no usable characters")

    stem = stem[: MAX_FILENAME_LENGTH - len(MODEL_EXTENSION)]
    return stem + MODEL_EXTENSION


def resolve_asset_name(name: str) -> str:
    """Canonical asset name for lookups. Rejects anything path-like."""
    if not name or "/" in name or "\\" in name or name.startswith(".") or "\x00" in name:
        raise InvalidFilenameError(f"Invalid asset name '{name}'")
    return sanitize_filename(name)


def is_blocked_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type.startswith(BLOCKED_CONTENT_TYPES) or media_type.endswith(
        BLOCKED_CONTENT_SUFFIXES
    )


def looks_like_html(chunk: bytes) -> bool:
    head = chunk[:512].lstrip(b"\xef\xbb\xbf \t\r\n").lower()
    return head.startswith(HTML_SIGNATURES)


@dataclass
class ImportProgress:
    """Progress of a URL import, polled by clients per session."""

    name: str
    bytes: int = 0
    total: Optional[int] = None
    status: str = "downloading"  # downloading | completed | failed
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class ImportTarget:
    """A validated URL import, ready to be downloaded."""

    session_id: str
    url: str
    name: str
    path: Path


@dataclass(frozen=True)
class MountHandle:
    """Identifies one transient mount in the backend model directory."""

    session_id: str
    job_id: str
    asset_name: str
    transient_name: str
    path: Path
    strategy: str


class MountStrategy(Protocol):
    name: str

    def place(self, source: Path, target: Path) -> None: ...


class SymlinkMount:
    """Zero-copy mount: symlink pointing at the session-scoped file."""

    name = "symlink"

    def place(self, source: Path, target: Path) -> None:
        target.symlink_to(source.resolve())


class CopyMount:
    """Fallback mount for filesystems without symlink support."""

    name = "copy"

    def place(self, source: Path, target: Path) -> None:
        staging = target.with_name(f".{target.name}.copy")
        try:
            shutil.copyfile(source, staging)
            os.replace(staging, target)
        finally:
            staging.unlink(missing_ok=True)


def default_client_factory(connect_timeout: float) -> Callable[[], httpx.AsyncClient]:
    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=connect_timeout), follow_redirects=False
        )

    return factory


class SessionAssetStore:
    """Owns per-session custom model directories and their transient mounts.

    All methods except the URL download are short synchronous filesystem
    operations, safe to call from the event loop.
    """

    def __init__(
        self,
        session_root: Path,
        backend_lora_dir: Path,
        max_asset_bytes: int,
        min_asset_bytes: int = 1024,
        session_ttl_seconds: float = 24 * 3600,
        max_url_length: int = 2048,
        connect_timeout: float = 10.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        resolver: Resolver = system_resolver,
        mount_strategies: Optional[list[MountStrategy]] = None,
    ):
        """Initialize asset store.

        Args:
            session_root: Directory holding one sub-directory per session
            backend_lora_dir: Render backend's global LoRA directory (mount target)
            max_asset_bytes: Hard size cap for uploads and imports
            min_asset_bytes: Smallest plausible model file
            session_ttl_seconds: Idle time after which a session directory is swept
            max_url_length: Longest accepted import URL
            connect_timeout: Connection timeout for URL imports (seconds)
            client_factory: Creates the httpx client used for imports
            resolver: Hostname resolver used by the SSRF guard
            mount_strategies: Ordered mount strategies (default: symlink, then copy)
        """
        self.session_root = Path(session_root)
        self.backend_lora_dir = Path(backend_lora_dir)
        self.max_asset_bytes = max_asset_bytes
        self.min_asset_bytes = min_asset_bytes
        self.session_ttl_seconds = session_ttl_seconds
        self.max_url_length = max_url_length
        self._client_factory = client_factory or default_client_factory(connect_timeout)
        self._resolver = resolver
        self._mount_strategies: list[MountStrategy] = mount_strategies or [
            SymlinkMount(),
            CopyMount(),
        ]
        self._imports: dict[str, ImportProgress] = {}
        self._live_mounts: dict[str, set[Path]] = {}

    # Paths

    def _session_dir(self, session_id: str) -> Path:
        return self.session_root / validate_session_id(session_id)

    def _asset_dir(self, session_id: str) -> Path:
        return self._session_dir(session_id) / ASSET_SUBDIR

    def _asset_path(self, session_id: str, name: str) -> Path:
        return self._asset_dir(session_id) / resolve_asset_name(name)

    def _touch(self, session_id: str) -> None:
        session_dir = self._session_dir(session_id)
        if session_dir.exists():
            os.utime(session_dir)

    def _new_asset_path(self, session_id: str, filename: str) -> Path:
        name = sanitize_filename(filename)
        asset_dir = self._asset_dir(session_id)
        path = asset_dir / name
        if path.exists():
            raise AssetExistsError(f"Asset '{name}' already exists")
        asset_dir.mkdir(parents=True, exist_ok=True)
        return path

    # Queries

    def list_assets(self, session_id: str) -> list[str]:
        """Return sorted asset names for a session (empty if none)."""
        asset_dir = self._asset_dir(session_id)
        if not asset_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in asset_dir.iterdir()
            if entry.is_file() and entry.name.endswith(MODEL_EXTENSION)
            and not entry.name.startswith(".")
        )

    def has_asset(self, session_id: str, name: str) -> bool:
        return self._asset_path(session_id, name).is_file()

    def import_progress(self, session_id: str) -> Optional[ImportProgress]:
        validate_session_id(session_id)
        return self._imports.get(session_id)

    # Upload

    async def _write_stream(
        self,
        chunks: AsyncIterable[bytes],
        part: Path,
        progress: Optional[ImportProgress] = None,
        sniff_html: bool = False,
        on_progress: Optional[Callable[[ImportProgress], None]] = None,
    ) -> int:
        """Stream chunks into ``part`` with a running size counter."""
        written = 0
        first = True
        with open(part, "wb") as handle:
            async for chunk in chunks:
                if not chunk:
                    continue
                if first and sniff_html and looks_like_html(chunk):
                    raise HtmlPayloadError("Remote file looks like an HTML page, not a model")
                first = False

                written += len(chunk)
                if written > self.max_asset_bytes:
                    raise AssetTooLargeError(
                        f"Asset exceeds maximum size of {self.max_asset_bytes} bytes"
                    )
                handle.write(chunk)

                if progress is not None:
                    progress.bytes = written
                    if on_progress is not None:
                        on_progress(progress)
        return written

    def _promote(self, part: Path, path: Path) -> None:
        """Check the on-disk size and move the temporary file into place."""
        size = part.stat().st_size
        if size > self.max_asset_bytes:
            raise AssetTooLargeError(f"Asset exceeds maximum size of {self.max_asset_bytes} bytes")
        if size < self.min_asset_bytes:
            raise AssetTooSmallError(
                f"Asset is only {size} bytes; model files are at least {self.min_asset_bytes}"
            )
        if path.exists():
            raise AssetExistsError(f"Asset '{path.name}' already exists")
        os.replace(part, path)

    async def upload(self, session_id: str, filename: str, chunks: AsyncIterable[bytes]) -> str:
        """Store an uploaded model file.

        Args:
            session_id: Owning session
            filename: Client-supplied filename (sanitized)
            chunks: Async iterable of file content chunks

        Returns:
            Final asset name

        Raises:
            InvalidSessionError, InvalidFilenameError, AssetExistsError,
            AssetTooLargeError, AssetTooSmallError
        """
        path = self._new_asset_path(session_id, filename)
        part = path.with_name(f".{path.name}.part")
        try:
            size = await self._write_stream(chunks, part)
            self._promote(part, path)
        finally:
            part.unlink(missing_ok=True)

        self._touch(session_id)
        logger.info("asset.uploaded", session_id=session_id, name=path.name, bytes=size)
        return path.name

    # URL import

    async def prepare_import(
        self, session_id: str, url: str, name_hint: Optional[str] = None
    ) -> ImportTarget:
        """Validate an import request and reserve its progress slot.

        Runs every check that does not need the remote response: session id,
        URL syntax and SSRF guard, target name and collisions.

        Raises:
            InvalidSessionError, InvalidUrlError, BlockedHostError,
            InvalidFilenameError, AssetExistsError, ImportInProgressError
        """
        validate_session_id(session_id)
        current = self._imports.get(session_id)
        if current is not None and current.status == "downloading":
            raise ImportInProgressError(f"Import of '{current.name}' is still running")

        # Reserve the slot before the first await so a concurrent request sees it
        reserved = ImportProgress(name=name_hint or url)
        self._imports[session_id] = reserved
        try:
            checked_url = await check_url(url, self.max_url_length, self._resolver)
            hint = name_hint or httpx.URL(checked_url).path.rsplit("/", 1)[-1] or "imported"
            path = self._new_asset_path(session_id, hint)
        except BaseException:
            if self._imports.get(session_id) is reserved:
                if current is None:
                    del self._imports[session_id]
                else:
                    self._imports[session_id] = current
            raise

        reserved.name = path.name
        return ImportTarget(session_id=session_id, url=checked_url, name=path.name, path=path)

    def _check_response(self, response: httpx.Response) -> Optional[int]:
        if not response.is_success:
            raise ImportFailedError(f"Remote host answered HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if content_type and is_blocked_content_type(content_type):
            raise DisallowedContentTypeError(
                f"Content type '{content_type}' is not a binary model file"
            )

        declared = response.headers.get("content-length")
        if declared and declared.isdigit():
            total = int(declared)
            if total > self.max_asset_bytes:
                raise AssetTooLargeError(
                    f"Remote file declares {total} bytes, above the {self.max_asset_bytes} cap"
                )
            return total
        return None

    async def run_import(
        self,
        target: ImportTarget,
        on_progress: Optional[Callable[[ImportProgress], None]] = None,
    ) -> str:
        """Download a prepared import into the session directory.

        Redirects are followed manually so that every hop passes the SSRF
        guard again. The body is streamed with a running byte counter; the
        temporary file is deleted on any failure.

        Returns:
            Final asset name
        """
        progress = self._imports.get(target.session_id)
        if progress is None or progress.name != target.name:
            progress = ImportProgress(name=target.name)
            self._imports[target.session_id] = progress

        part = target.path.with_name(f".{target.path.name}.part")
        url = target.url
        try:
            async with self._client_factory() as client:
                for _ in range(MAX_REDIRECTS + 1):
                    async with client.stream("GET", url) as response:
                        if response.is_redirect:
                            location = response.headers.get("location")
                            if not location:
                                raise ImportFailedError("Redirect without Location header")
                            url = await check_url(
                                str(response.url.join(location)),
                                self.max_url_length,
                                self._resolver,
                            )
                            continue

                        progress.total = self._check_response(response)
                        await self._write_stream(
                            response.aiter_bytes(),
                            part,
                            progress=progress,
                            sniff_html=True,
                            on_progress=on_progress,
                        )
                        break
                else:
                    raise ImportFailedError(f"More than {MAX_REDIRECTS} redirects")

            self._promote(part, target.path)

        except ServiceError as e:
            progress.status = "failed"
            progress.error = e.message
            progress.reason = e.reason
            logger.warning(
                "asset.import.failed",
                session_id=target.session_id,
                name=target.name,
                reason=e.reason,
                error=e.message,
            )
            raise

        except httpx.TimeoutException as e:
            progress.status = "failed"
            progress.error = "Remote host timed out"
            progress.reason = ImportFailedError.reason
            raise ImportFailedError(f"Remote host timed out: {e}") from e

        except httpx.HTTPError as e:
            progress.status = "failed"
            progress.error = "Download failed"
            progress.reason = ImportFailedError.reason
            raise ImportFailedError(f"Download failed: {e}") from e

        except BaseException as e:
            # Disk errors and cancellation must not leave the slot "downloading"
            progress.status = "failed"
            progress.error = "Import interrupted"
            progress.reason = ImportFailedError.reason
            logger.error(
                "asset.import.interrupted",
                session_id=target.session_id,
                name=target.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        finally:
            part.unlink(missing_ok=True)

        progress.status = "completed"
        if on_progress is not None:
            on_progress(progress)
        self._touch(target.session_id)
        logger.info(
            "asset.imported",
            session_id=target.session_id,
            name=target.name,
            bytes=progress.bytes,
        )
        return target.name

    async def import_from_url(
        self,
        session_id: str,
        url: str,
        name_hint: Optional[str] = None,
        on_progress: Optional[Callable[[ImportProgress], None]] = None,
    ) -> str:
        """Validate and download a model file from a public URL."""
        target = await self.prepare_import(session_id, url, name_hint)
        return await self.run_import(target, on_progress)

    # Removal

    def delete_asset(self, session_id: str, name: str) -> None:
        """Explicitly remove one asset. Existing mounts are unaffected."""
        path = self._asset_path(session_id, name)
        if not path.is_file():
            raise AssetNotFoundError(f"Asset '{path.name}' not found")
        path.unlink()
        logger.info("asset.deleted", session_id=session_id, name=path.name)

    # Transient mounts

    def mount(self, session_id: str, name: str, job_id: str) -> MountHandle:
        """Expose a session asset to the render backend for one job.

        Returns:
            Handle naming the transient entry in the backend LoRA directory

        Raises:
            AssetNotFoundError: If the asset does not exist
            OSError: If every mount strategy failed
        """
        source = self._asset_path(session_id, name)
        if not source.is_file():
            raise AssetNotFoundError(f"Asset '{source.name}' not found")

        self.backend_lora_dir.mkdir(parents=True, exist_ok=True)
        transient_name = f"{MOUNT_PREFIX}{session_id}_{job_id[:12]}_{source.name}"
        target = self.backend_lora_dir / transient_name
        target.unlink(missing_ok=True)

        last_error: Optional[OSError] = None
        for strategy in self._mount_strategies:
            try:
                strategy.place(source, target)
            except (OSError, NotImplementedError) as e:
                last_error = e if isinstance(e, OSError) else OSError(str(e))
                logger.warning("asset.mount.fallback", strategy=strategy.name, error=str(e))
                continue

            self._touch(session_id)
            self._live_mounts.setdefault(session_id, set()).add(target)
            logger.info(
                "asset.mounted",
                session_id=session_id,
                job_id=job_id,
                transient_name=transient_name,
                strategy=strategy.name,
            )
            return MountHandle(
                session_id=session_id,
                job_id=job_id,
                asset_name=source.name,
                transient_name=transient_name,
                path=target,
                strategy=strategy.name,
            )

        raise last_error or OSError("No mount strategy configured")

    def unmount(self, handle: MountHandle) -> None:
        """Remove exactly the transient entry of ``handle``. Idempotent."""
        handle.path.unlink(missing_ok=True)
        live = self._live_mounts.get(handle.session_id)
        if live is not None:
            live.discard(handle.path)
            if not live:
                del self._live_mounts[handle.session_id]
        logger.info("asset.unmounted", job_id=handle.job_id, transient_name=handle.transient_name)

    def is_mounted(self, handle: MountHandle) -> bool:
        return os.path.lexists(handle.path)

    def cleanup_stale_mounts(self) -> int:
        """Remove mounts left behind by a previous process (startup recovery)."""
        if not self.backend_lora_dir.is_dir():
            return 0
        removed = 0
        for entry in self.backend_lora_dir.iterdir():
            if entry.name.startswith(MOUNT_PREFIX):
                entry.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("asset.stale_mounts_removed", count=removed)
        return removed

    # Expiry

    def expired_sessions(self, now: Optional[float] = None) -> list[Path]:
        if not self.session_root.is_dir():
            return []
        now = time.time() if now is None else now
        expired = []
        for entry in self.session_root.iterdir():
            if not entry.is_dir() or not SESSION_ID_PATTERN.fullmatch(entry.name):
                continue
            if now - entry.stat().st_mtime > self.session_ttl_seconds:
                expired.append(entry)
        return expired

    def _has_active_mount(self, session_id: str) -> bool:
        # Mount names are ambiguous when session ids contain "_"
        return any(os.path.lexists(path) for path in self._live_mounts.get(session_id, ()))

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """Delete session directories idle for longer than the TTL.

        Sessions with a download in progress or a live mount are skipped, so a
        running job never loses the file its mount points at.

        Returns:
            Number of session directories removed
        """
        removed = 0
        for entry in self.expired_sessions(now):
            progress = self._imports.get(entry.name)
            if progress is not None and progress.status == "downloading":
                continue
            if self._has_active_mount(entry.name):
                continue
            try:
                shutil.rmtree(entry)
            except OSError as e:
                logger.error("sessions.sweep_failed", session_id=entry.name, error=str(e))
                continue
            self._imports.pop(entry.name, None)
            removed += 1

        if removed:
            logger.info("sessions.swept", count=removed)
        return removed
