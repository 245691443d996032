"""Entitlement tiers."""

from enum import Enum


class Tier(str, Enum):
    """Capability tier, ordered from least to most privileged."""

    FREE = "free"
    TRIAL = "trial"
    PRO = "pro"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @property
    def is_paid(self) -> bool:
        """Trial and above unlock premium features and tier-gated content."""
        return self.rank >= _TIER_RANK[Tier.TRIAL]


_TIER_RANK = {Tier.FREE: 0, Tier.TRIAL: 1, Tier.PRO: 2}
