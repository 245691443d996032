"""Rule-based lexical content policy for generation prompts.

Validation model:
    - Substring matching only, no classifier/model inference.
    - Text is normalized before matching: Unicode NFKC, case-folding,
      zero-width character stripping and whitespace collapsing.
    - The always-blocked set is evaluated first and unconditionally.
    - The tier-gated set only applies below the paid tier.

Bypass risk:
    Substring matching can be bypassed by misspellings or unsupported
    languages. Normalization removes the cheap tricks (fullwidth letters,
    zero-width joiners, padding with whitespace), nothing more.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

from umrgen.models.tier import Tier

# Never permitted, regardless of tier
ALWAYS_BLOCKED_PATTERNS = [
    "child porn",
    "childporn",
    "csam",
    "underage",
    "under-age",
    "preteen",
    "pre-teen",
    "loli",
    "shota",
    "minor nude",
    "nude minor",
    "nude child",
    "naked child",
    "sexualized child",
    "kinderporno",
    "pornografia infantil",
]

# Blocked only below the paid tier
TIER_GATED_PATTERNS = [
    "nsfw",
    "nude",
    "naked",
    "topless",
    "nipple",
    "explicit",
    "porn",
    "hentai",
    "lingerie",
    "gore",
    "dismember",
    "decapitat",
]

ZERO_WIDTH_CHARACTERS = dict.fromkeys(
    map(ord, "\u200b\u200c\u200d\u200e\u200f\u2060\u2061\u2062\u2063\u2064\ufeff\u00ad"),
    None,
)

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class PolicyViolation:
    """A matched policy rule."""

    reason: str  # "content_blocked" | "content_restricted"
    pattern: str


def normalize_text(text: str) -> str:
    """Normalize text for pattern matching."""
    normalized = unicodedata.normalize("NFKC", text or "")
    normalized = normalized.translate(ZERO_WIDTH_CHARACTERS).casefold()
    return _WHITESPACE.sub(" ", normalized).strip()


def scan_policy(text: str, tier: Tier) -> Optional[PolicyViolation]:
    """Scan prompt text against the content policy.

    Args:
        text: Raw prompt text
        tier: Tier of the requesting client

    Returns:
        PolicyViolation for the first matching rule, or None when allowed
    """
    normalized = normalize_text(text)
    if not normalized:
        return None

    for pattern in ALWAYS_BLOCKED_PATTERNS:
        if pattern in normalized:
            return PolicyViolation(reason="content_blocked", pattern=pattern)

    if not Tier(tier).is_paid:
        for pattern in TIER_GATED_PATTERNS:
            if pattern in normalized:
                return PolicyViolation(reason="content_restricted", pattern=pattern)

    return None
