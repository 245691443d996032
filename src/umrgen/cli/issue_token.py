"""CLI command for issuing capability tokens offline.

Usage:
    python -m umrgen.cli.issue_token [OPTIONS]

Examples:
    # Pro token with the default lifetime
    python -m umrgen.cli.issue_token --tier pro

    # Metered trial token valid for 48 hours
    python -m umrgen.cli.issue_token --tier trial --limit 20 --ttl-hours 48

    # Label the token for later identification in logs
    python -m umrgen.cli.issue_token --tier pro --key-id partner-a
"""

import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from umrgen.core.config import Settings, configure_logging
from umrgen.models.tier import Tier
from umrgen.services.entitlement.tokens import TokenService

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Issue a signed capability token",
        epilog="Tokens are signed with TOKEN_SECRET from the environment or .env",
    )

    parser.add_argument(
        "--tier",
        choices=[tier.value for tier in Tier],
        default=Tier.PRO.value,
        help="Tier asserted by the token (default: pro)",
    )

    parser.add_argument(
        "--ttl-hours",
        type=float,
        help="Token lifetime in hours (default: TOKEN_TTL_HOURS)",
    )

    parser.add_argument(
        "--limit",
        type=int,
        help="Number of generations allowed (default: unmetered)",
    )

    parser.add_argument(
        "--key-id",
        help="Optional label embedded in the token",
    )

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Issue a token and print it to stdout.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    if not settings.token_secret:
        print("Error: TOKEN_SECRET is not configured", file=sys.stderr)
        return 1

    if args.limit is not None and args.limit < 0:
        print("Error: --limit must be non-negative", file=sys.stderr)
        return 1

    service = TokenService(
        secret=settings.token_secret,
        default_ttl_seconds=settings.token_ttl_hours * 3600,
    )
    ttl_seconds = args.ttl_hours * 3600 if args.ttl_hours is not None else None
    token = service.issue(
        Tier(args.tier), ttl_seconds=ttl_seconds, usage_limit=args.limit, key_id=args.key_id
    )

    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
