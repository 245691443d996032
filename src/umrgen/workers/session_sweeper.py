"""Session sweeper worker.

Periodically deletes session asset directories that have been idle for
longer than ``SESSION_TTL_HOURS``. Sessions with a live transient mount
or a running URL import are left for a later tick.
"""

import asyncio

import structlog

from umrgen.services.assets.store import SessionAssetStore

logger = structlog.get_logger(__name__)


async def run_session_sweeper(asset_store: SessionAssetStore, interval_seconds: float) -> None:
    """Run the sweep loop until cancelled.

    Filesystem errors are logged and retried on the next tick; anything else
    propagates so the resilient-worker wrapper restarts the loop.
    """
    logger.info("sessions.sweeper_started", interval_seconds=interval_seconds)
    while True:
        try:
            await asyncio.to_thread(asset_store.sweep_expired)
        except OSError as e:
            logger.error("sessions.sweep_error", error=str(e), error_type=type(e).__name__)
        await asyncio.sleep(interval_seconds)
