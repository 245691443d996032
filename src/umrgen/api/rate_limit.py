"""Per-client sliding-window rate limiting for generation requests."""

from collections import deque
from time import monotonic
from typing import Callable, Optional

import structlog

from umrgen.services.exceptions import RateLimitedError

logger = structlog.get_logger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most ``limit`` hits per key within ``window_seconds``."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        time_provider: Optional[Callable[[], float]] = None,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._time_provider = time_provider or monotonic
        self._hits: dict[str, deque[float]] = {}

    def _prune(self, key: str, now: float) -> deque[float]:
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        return hits

    def retry_after(self, key: str) -> float:
        now = self._time_provider()
        hits = self._prune(key, now)
        if len(hits) < self.limit:
            return 0.0
        return max(self.window_seconds - (now - hits[0]), 0.0)

    def hit(self, key: str) -> None:
        """Record one request for ``key``.

        Raises:
            RateLimitedError: If the key already used its budget in the window
        """
        if self.limit <= 0:
            return
        now = self._time_provider()
        hits = self._prune(key, now)
        if len(hits) >= self.limit:
            wait = self.window_seconds - (now - hits[0])
            logger.info("gateway.rate_limited", client=key, retry_after=round(wait, 1))
            raise RateLimitedError(f"Too many requests; try again in {wait:.0f} seconds")
        hits.append(now)

    def reset(self) -> None:
        self._hits.clear()
