"""Tests for capability token signing, verification and metering.

Covers:
- Round trip: issue → verify preserves tier, limit and key id
- Tampering, malformed input, wrong secret and expiry degrade to the lowest tier
- Metered tokens allow exactly ``limit`` generations
- Activation keys map to tiers; unknown keys are rejected
"""

import base64
import json

import pytest

from umrgen.models.tier import Tier
from umrgen.services.entitlement.tokens import TokenService
from umrgen.services.exceptions import InvalidActivationKeyError

SECRET = "test-secret"


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(
        secret=SECRET,
        default_ttl_seconds=3600,
        activation_keys={"pro-key": (Tier.PRO, None), "trial-key": (Tier.TRIAL, 3)},
    )


def _forge_payload(token: str, **changes) -> str:
    payload_b64, _, signature = token.partition(".")
    padded = payload_b64 + "=" * (-len(payload_b64) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded))
    payload.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"{forged}.{signature}"


class TestTokenRoundTrip:
    def test_issue_then_verify(self, tokens):
        token = tokens.issue(Tier.PRO, key_id="ops")

        claims = tokens.verify(token)

        assert claims.valid is True
        assert claims.tier == Tier.PRO
        assert claims.key_id == "ops"
        assert claims.usage_limit is None
        assert claims.metered is False

    def test_metered_token_carries_limit(self, tokens):
        token = tokens.issue(Tier.TRIAL, usage_limit=5)

        claims = tokens.verify(token)

        assert claims.tier == Tier.TRIAL
        assert claims.usage_limit == 5
        assert tokens.remaining(token) == 5

    def test_token_is_opaque_two_part_string(self, tokens):
        token = tokens.issue(Tier.PRO)
        payload, signature = token.split(".")
        assert payload and "=" not in payload
        assert len(signature) == 64


class TestTokenDegradation:
    """Every verification problem yields the free tier, never an exception."""

    @pytest.mark.parametrize("token", [None, "", "garbage", "abc.", ".abc", "a.b.c"])
    def test_malformed_tokens(self, tokens, token):
        claims = tokens.verify(token)
        assert claims.tier == Tier.FREE
        assert claims.valid is False

    def test_tampered_payload_rejected(self, tokens):
        token = tokens.issue(Tier.FREE)

        forged = _forge_payload(token, tier="pro")

        claims = tokens.verify(forged)
        assert claims.tier == Tier.FREE
        assert claims.valid is False

    def test_tampered_signature_rejected(self, tokens):
        token = tokens.issue(Tier.PRO)
        payload, _, signature = token.partition(".")
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]

        assert tokens.verify(f"{payload}.{flipped}").valid is False

    def test_wrong_secret_rejected(self, tokens):
        other = TokenService(secret="another-secret")
        token = other.issue(Tier.PRO)

        assert tokens.verify(token).tier == Tier.FREE

    def test_expired_token_rejected(self, tokens):
        token = tokens.issue(Tier.PRO, ttl_seconds=-10)

        claims = tokens.verify(token)

        assert claims.valid is False
        assert claims.tier == Tier.FREE


class TestMetering:
    def test_exhausted_at_limit_plus_one(self, tokens):
        token = tokens.issue(Tier.TRIAL, usage_limit=3)

        results = [tokens.consume(token) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[-1].limit_reached is True
        assert tokens.remaining(token) == 0

    def test_counters_are_per_token(self, tokens):
        first = tokens.issue(Tier.TRIAL, usage_limit=1)
        second = tokens.issue(Tier.TRIAL, usage_limit=1, key_id="other")

        assert tokens.consume(first).allowed is True
        assert tokens.consume(first).allowed is False
        assert tokens.consume(second).allowed is True

    def test_unmetered_tokens_always_allowed(self, tokens):
        token = tokens.issue(Tier.PRO)
        for _ in range(10):
            result = tokens.consume(token)
            assert result.allowed is True
            assert result.remaining is None

    def test_missing_token_is_unmetered(self, tokens):
        assert tokens.consume(None).allowed is True
        assert tokens.remaining(None) is None


class TestActivation:
    def test_trial_key_issues_metered_trial_token(self, tokens):
        token = tokens.activate("trial-key")

        claims = tokens.verify(token)

        assert claims.tier == Tier.TRIAL
        assert claims.usage_limit == 3
        assert claims.key_id is not None and len(claims.key_id) == 8

    def test_pro_key_issues_unmetered_pro_token(self, tokens):
        claims = tokens.verify(tokens.activate("pro-key"))
        assert claims.tier == Tier.PRO
        assert claims.usage_limit is None

    def test_unknown_key_rejected(self, tokens):
        with pytest.raises(InvalidActivationKeyError) as exc_info:
            tokens.activate("guess")
        assert exc_info.value.reason == "invalid_activation_key"
        assert exc_info.value.status_code == 403
