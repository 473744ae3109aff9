"""Data models shared by the risk classifier and its consumers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    """Coarse risk bucket for one risk axis."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    UNKNOWN = "UNKNOWN"


class RangeStatus(str, Enum):
    """Where a liquidity position sits relative to its tick range."""

    IN_RANGE = "IN_RANGE"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    INACTIVE = "INACTIVE"
    UNKNOWN = "UNKNOWN"


_TIER_RANK = {
    Tier.LOW: 1,
    Tier.MEDIUM: 2,
    Tier.HIGH: 3,
    Tier.CRITICAL: 4,
}


def tier_rank(tier: Tier) -> int:
    """Numeric severity of a tier. UNKNOWN ranks below LOW."""
    return _TIER_RANK.get(tier, 0)


def tier_at_least(tier: Tier, minimum: Tier) -> bool:
    """Return True when ``tier`` is at least as severe as ``minimum``.

    UNKNOWN never satisfies a minimum, so missing data cannot open an alert.
    """
    if tier == Tier.UNKNOWN:
        return False
    return tier_rank(tier) >= tier_rank(minimum)


def worst_tier(tiers: list[Tier]) -> Tier:
    """Most severe known tier in ``tiers``, or UNKNOWN when none is known."""
    known = [t for t in tiers if t != Tier.UNKNOWN]
    if not known:
        return Tier.UNKNOWN
    return max(known, key=tier_rank)


@dataclass(frozen=True)
class Classification:
    """Result of classifying one risk axis.

    Attributes:
        tier: Risk bucket.
        label: Short human rationale. Never used in comparisons.
        position_frac: Relative position inside a tick range (range axis only).
        distance_frac: Normalized distance used for tiering, when applicable.
    """

    tier: Tier
    label: str
    position_frac: float | None = None
    distance_frac: float | None = None
