"""Bounded generation history, persisted as a JSON file next to the outputs."""

import json
import os
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

HISTORY_FILENAME = "history.json"


class HistoryLog:
    """Append-only list of finished jobs, newest last, capped at ``limit``.

    The file is rewritten atomically (temp file + ``os.replace``) on every
    append. Artifacts outlive the history entries that point at them.
    """

    def __init__(self, output_root: Path, limit: int = 100):
        self.path = Path(output_root) / HISTORY_FILENAME
        self.limit = limit

    def _load(self) -> list[dict]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("history.unreadable", path=str(self.path), error=str(e))
            return []
        return [entry for entry in data if isinstance(entry, dict)] if isinstance(data, list) else []

    def append(self, entry: dict) -> None:
        entries = self._load()
        entries.append(entry)
        entries = entries[-self.limit :]

        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(f".{self.path.name}.tmp")
        staging.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        os.replace(staging, self.path)

    def entries(self, session_id: Optional[str] = None, limit: Optional[int] = None) -> list[dict]:
        """Return history entries, newest first, optionally for one session."""
        entries = list(reversed(self._load()))
        if session_id is not None:
            entries = [entry for entry in entries if entry.get("session_id") == session_id]
        if limit is not None:
            entries = entries[:limit]
        return entries
