"""CLI command for a one-off session cleanup.

Removes session asset directories idle for longer than SESSION_TTL_HOURS and
transient mounts left in BACKEND_LORA_DIR by a previous process. Do not run
against a live server's mount directory while it is rendering.

Usage:
    python -m umrgen.cli.sweep_sessions [--dry-run]
"""

import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from umrgen.core.config import Settings, configure_logging
from umrgen.services.assets.store import MOUNT_PREFIX, SessionAssetStore

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Sweep expired sessions and stale mounts")

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List what would be removed without deleting anything",
    )

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the sweep.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    store = SessionAssetStore(
        session_root=settings.session_root,
        backend_lora_dir=settings.backend_lora_dir,
        max_asset_bytes=settings.max_asset_bytes,
        min_asset_bytes=settings.min_asset_bytes,
        session_ttl_seconds=settings.session_ttl_hours * 3600,
    )

    if args.dry_run:
        expired = store.expired_sessions()
        stale = []
        if settings.backend_lora_dir.is_dir():
            stale = [
                entry
                for entry in settings.backend_lora_dir.iterdir()
                if entry.name.startswith(MOUNT_PREFIX)
            ]
        print(f"Expired sessions: {len(expired)}")
        for entry in expired:
            print(f"  - {entry.name}")
        print(f"Stale mounts: {len(stale)}")
        for entry in stale:
            print(f"  - {entry.name}")
        print("\n[DRY RUN] Nothing was deleted")
        return 0

    try:
        # Mounts left by a stopped server would dangle once their sessions are swept
        removed = store.cleanup_stale_mounts()
        swept = store.sweep_expired()
    except OSError as e:
        logger.error("cli.sweep_failed", error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Sessions removed: {swept}")
    print(f"Stale mounts removed: {removed}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
