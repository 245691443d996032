"""Signed capability tokens and metered usage counters.

A capability token is an opaque string asserting a tier, an expiry and an
optional usage limit. It is verified without any server-side session lookup:

    <base64url(json payload)>.<hex HMAC-SHA256(secret, base64 payload)>

Payload keys:
    tier: Tier value ("free", "trial", "pro")
    exp:  Expiry as unix timestamp (seconds)
    lim:  Optional usage limit for metered tokens
    kid:  Optional key id (label of the activation key that produced it)

Security Note:
    Verification never raises. A missing, malformed, tampered or expired token
    degrades to the lowest tier so that callers always get a usable answer.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from umrgen.models.tier import Tier
from umrgen.services.exceptions import InvalidActivationKeyError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a capability token."""

    tier: Tier
    expires_at: Optional[float] = None
    usage_limit: Optional[int] = None
    key_id: Optional[str] = None
    valid: bool = False

    @property
    def metered(self) -> bool:
        return self.valid and self.usage_limit is not None


LOWEST_TIER_CLAIMS = TokenClaims(tier=Tier.FREE)


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of consuming one metered use."""

    allowed: bool
    remaining: Optional[int]
    limit_reached: bool = False


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class TokenService:
    """Issues and verifies capability tokens and meters their usage.

    Usage counters are keyed by the token string itself and created lazily on
    first consumption. They live for the process lifetime only.
    """

    def __init__(
        self,
        secret: str,
        default_ttl_seconds: float = 30 * 24 * 3600,
        activation_keys: Optional[dict[str, tuple[Tier, Optional[int]]]] = None,
    ):
        """Initialize token service.

        Args:
            secret: Server-held HMAC key
            default_ttl_seconds: Lifetime for tokens issued without explicit TTL
            activation_keys: Mapping of shared-secret key -> (tier, usage limit)
        """
        self._secret = secret.encode("utf-8")
        self.default_ttl_seconds = default_ttl_seconds
        self._activation_keys = {k: v for k, v in (activation_keys or {}).items() if k}
        self._counters: dict[str, int] = {}

    def _sign(self, payload_b64: str) -> str:
        return hmac.new(
            key=self._secret, msg=payload_b64.encode("ascii"), digestmod=hashlib.sha256
        ).hexdigest()

    def issue(
        self,
        tier: Tier,
        ttl_seconds: Optional[float] = None,
        usage_limit: Optional[int] = None,
        key_id: Optional[str] = None,
    ) -> str:
        """Issue a new signed token.

        Args:
            tier: Tier asserted by the token
            ttl_seconds: Lifetime in seconds (defaults to the service TTL)
            usage_limit: Number of generations allowed (None = unmetered)
            key_id: Optional label of the issuing key

        Returns:
            Opaque token string
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        payload: dict = {"tier": Tier(tier).value, "exp": int(time.time() + ttl)}
        if usage_limit is not None:
            if usage_limit < 0:
                raise ValueError("usage_limit must be non-negative")
            payload["lim"] = int(usage_limit)
        if key_id:
            payload["kid"] = key_id

        payload_b64 = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        token = f"{payload_b64}.{self._sign(payload_b64)}"
        logger.info(
            "token.issued",
            tier=payload["tier"],
            usage_limit=usage_limit,
            key_id=key_id,
            expires_at=payload["exp"],
        )
        return token

    def verify(self, token: Optional[str]) -> TokenClaims:
        """Verify a token and return its claims.

        Returns the lowest tier (``valid=False``) on any problem: missing token,
        bad structure, signature mismatch (constant-time comparison), unknown
        tier or expiry in the past.
        """
        if not token:
            return LOWEST_TIER_CLAIMS

        payload_b64, sep, signature = token.partition(".")
        if not sep or not payload_b64 or not signature:
            return LOWEST_TIER_CLAIMS

        if not hmac.compare_digest(self._sign(payload_b64), signature.lower()):
            logger.warning("token.signature_mismatch")
            return LOWEST_TIER_CLAIMS

        try:
            payload = json.loads(_b64decode(payload_b64))
            tier = Tier(payload["tier"])
            expires_at = float(payload["exp"])
            usage_limit = payload.get("lim")
            if usage_limit is not None:
                usage_limit = int(usage_limit)
        except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
            logger.warning("token.malformed_payload")
            return LOWEST_TIER_CLAIMS

        if expires_at < time.time():
            logger.info("token.expired", tier=tier.value)
            return LOWEST_TIER_CLAIMS

        return TokenClaims(
            tier=tier,
            expires_at=expires_at,
            usage_limit=usage_limit,
            key_id=payload.get("kid"),
            valid=True,
        )

    def remaining(self, token: Optional[str]) -> Optional[int]:
        """Remaining metered uses, or None for unmetered/invalid tokens."""
        claims = self.verify(token)
        if not claims.metered:
            return None
        return self._counters.get(token, claims.usage_limit)

    def consume(self, token: Optional[str]) -> ConsumeResult:
        """Consume one use of a metered token.

        The counter is initialized lazily to the token's encoded limit and
        decremented per accepted generation. Unmetered tokens are always allowed.
        """
        claims = self.verify(token)
        if not claims.metered:
            return ConsumeResult(allowed=True, remaining=None)

        remaining = self._counters.get(token, claims.usage_limit)
        if remaining <= 0:
            self._counters[token] = 0
            logger.info("token.limit_reached", tier=claims.tier.value, key_id=claims.key_id)
            return ConsumeResult(allowed=False, remaining=0, limit_reached=True)

        remaining -= 1
        self._counters[token] = remaining
        return ConsumeResult(allowed=True, remaining=remaining)

    def activate(self, key: str) -> str:
        """Exchange a shared-secret activation key for a signed token.

        Raises:
            InvalidActivationKeyError: If the key matches no configured key
        """
        matched = None
        for candidate, grant in self._activation_keys.items():
            # Check every key so timing does not reveal which one matched
            if hmac.compare_digest(candidate.encode("utf-8"), key.encode("utf-8")):
                matched = (candidate, grant)

        if matched is None:
            logger.warning("token.activation_rejected")
            raise InvalidActivationKeyError("Activation key not recognized")

        candidate, (tier, usage_limit) = matched
        key_id = hashlib.sha256(candidate.encode("utf-8")).hexdigest()[:8]
        return self.issue(tier, usage_limit=usage_limit, key_id=key_id)
