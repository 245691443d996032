"""SSRF guard for URL imports.

Checks run before any HTTP request is made:
1. Protocol allowlist (http, https) and maximum URL length
2. Hostname blocklist for local names (localhost, *.local, *.internal, ...)
3. Every address the hostname resolves to must be globally routable
   (no loopback, RFC1918 private, link-local, reserved, multicast or
   unspecified ranges, including IPv4-mapped IPv6 forms)
"""

import asyncio
import ipaddress
import socket
from typing import Awaitable, Callable, Iterable
from urllib.parse import urlsplit

import structlog

from umrgen.services.exceptions import BlockedHostError, InvalidUrlError

logger = structlog.get_logger(__name__)

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
BLOCKED_SUFFIXES = (".localhost", ".local", ".internal", ".lan", ".home.arpa", ".localdomain")

Resolver = Callable[[str, int], Awaitable[Iterable[str]]]


async def system_resolver(host: str, port: int) -> list[str]:
    """Resolve a hostname to IP address strings using the event loop resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def is_blocked_address(address: str) -> bool:
    """Return True when an IP address must never be contacted."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
        or not ip.is_global
    )


def parse_import_url(url: str, max_length: int) -> tuple[str, str, int]:
    """Validate URL syntax and return (scheme, host, port).

    Raises:
        InvalidUrlError: Wrong protocol, too long, or missing host
    """
    if not url or len(url) > max_length:
        raise InvalidUrlError(f"URL must be between 1 and {max_length} characters")

    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        raise InvalidUrlError(f"Malformed URL: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidUrlError("Only http and https URLs are allowed")

    host = (parts.hostname or "").rstrip(".").lower()
    if not host:
        raise InvalidUrlError("URL has no host")

    if parts.username or parts.password:
        raise InvalidUrlError("URLs with embedded credentials are not allowed")

    return scheme, host, port or (443 if scheme == "https" else 80)


async def check_url(url: str, max_length: int, resolver: Resolver = system_resolver) -> str:
    """Validate a URL for import and reject internal destinations.

    Args:
        url: Candidate URL
        max_length: Maximum accepted URL length
        resolver: Async callable returning the addresses of a host

    Returns:
        The stripped URL

    Raises:
        InvalidUrlError: Syntax/protocol problems
        BlockedHostError: Host is local or resolves to a non-public address
    """
    scheme, host, port = parse_import_url(url, max_length)

    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
        logger.warning("asset.import.blocked", host=host, reason="local_hostname")
        raise BlockedHostError(f"Host '{host}' is not allowed")

    try:
        literal = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        literal = None

    if literal is not None:
        addresses = [str(literal)]
    else:
        try:
            addresses = list(await resolver(host, port))
        except (OSError, UnicodeError) as e:
            raise InvalidUrlError(f"Could not resolve host '{host}'") from e

    if not addresses:
        raise InvalidUrlError(f"Could not resolve host '{host}'")

    for address in addresses:
        if is_blocked_address(address):
            logger.warning(
                "asset.import.blocked", host=host, address=address, reason="private_address"
            )
            raise BlockedHostError(f"Host '{host}' resolves to a non-public address")

    return url.strip()
