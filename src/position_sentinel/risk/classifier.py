"""Pure risk tiering for loans and liquidity positions.

Every function in this module is deterministic and side-effect free: the
same inputs always produce the same ``Classification``, so callers may
classify redundantly (status queries, monitoring cycles) without
coordination.

Three axes are covered:
- Liquidation: buffer between the current collateral price and the
  liquidation price, as a fraction of the current price.
- Redemption: share of total branch debt that would be redeemed before the
  loan (debt-ahead depth). Higher debt-ahead means lower risk.
- Liquidity range: position of the pool tick inside, or distance outside,
  the position's tick range, normalized by the range width.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from position_sentinel.risk.models import Classification, RangeStatus, Tier
from position_sentinel.risk.overrides import NO_OVERRIDES, RiskOverrides

LABEL_UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class LiquidationThresholds:
    """Buffer cutoffs, most to least comfortable (``low > medium > high``)."""

    low: float
    medium: float
    high: float


@dataclass(frozen=True)
class RedemptionThresholds:
    """Debt-ahead cutoffs, most to least comfortable (``low > medium > high``)."""

    low: float
    medium: float
    high: float


@dataclass(frozen=True)
class LpRangeThresholds:
    """Range cutoffs as fractions of the tick range width.

    ``edge_high < edge_warn`` bound the in-range center distance;
    ``out_warn < out_high`` bound the out-of-range distance.
    """

    edge_warn: float
    edge_high: float
    out_warn: float
    out_high: float


def _finite(value: float | None) -> bool:
    return value is not None and math.isfinite(value)


def liquidation_buffer_frac(price: float | None, liquidation_price: float | None) -> float | None:
    """Distance from the current price down to the liquidation price, over price."""
    if not _finite(price) or not _finite(liquidation_price) or price is None or price <= 0:
        return None
    assert liquidation_price is not None
    return (price - liquidation_price) / price


def classify_liquidation(buffer_frac: float | None, thresholds: LiquidationThresholds) -> Classification:
    """Tier a loan by its liquidation buffer.

    Args:
        buffer_frac: ``(price - liquidation_price) / price``; ``None`` when price
            data is missing.
        thresholds: Configured cutoffs.

    Returns:
        Classification with ``distance_frac`` set to the buffer.
    """
    if not _finite(buffer_frac):
        return Classification(Tier.UNKNOWN, f"price {LABEL_UNAVAILABLE}")
    assert buffer_frac is not None
    if buffer_frac >= thresholds.low:
        return Classification(Tier.LOW, "comfortable buffer above liquidation price", distance_frac=buffer_frac)
    if buffer_frac >= thresholds.medium:
        return Classification(Tier.MEDIUM, "buffer narrowing", distance_frac=buffer_frac)
    if buffer_frac >= thresholds.high:
        return Classification(Tier.HIGH, "close to liquidation price", distance_frac=buffer_frac)
    return Classification(Tier.CRITICAL, "at or near liquidation", distance_frac=buffer_frac)


def classify_redemption(debt_ahead_frac: float | None, thresholds: RedemptionThresholds) -> Classification:
    """Tier a loan by the share of branch debt that is redeemed before it."""
    if not _finite(debt_ahead_frac):
        return Classification(Tier.UNKNOWN, f"debt-ahead {LABEL_UNAVAILABLE}")
    assert debt_ahead_frac is not None
    if debt_ahead_frac < 0:
        return Classification(Tier.UNKNOWN, "negative debt-ahead", distance_frac=debt_ahead_frac)
    if debt_ahead_frac >= thresholds.low:
        return Classification(Tier.LOW, "deep in the redemption queue", distance_frac=debt_ahead_frac)
    if debt_ahead_frac >= thresholds.medium:
        return Classification(Tier.MEDIUM, "moderate debt ahead", distance_frac=debt_ahead_frac)
    if debt_ahead_frac >= thresholds.high:
        return Classification(Tier.HIGH, "little debt ahead", distance_frac=debt_ahead_frac)
    return Classification(Tier.CRITICAL, "next in line for redemption", distance_frac=debt_ahead_frac)


def derive_range_status(
    *,
    liquidity: int | float | None,
    tick_lower: int | None,
    tick_upper: int | None,
    current_tick: int | None,
) -> RangeStatus:
    """Range status from raw position state. Zero liquidity is always INACTIVE."""
    if liquidity is not None and liquidity == 0:
        return RangeStatus.INACTIVE
    if liquidity is None or tick_lower is None or tick_upper is None or current_tick is None:
        return RangeStatus.UNKNOWN
    if tick_lower <= current_tick < tick_upper:
        return RangeStatus.IN_RANGE
    return RangeStatus.OUT_OF_RANGE


def classify_lp_range(
    *,
    status: RangeStatus,
    tick_lower: int | None,
    tick_upper: int | None,
    current_tick: int | None,
    thresholds: LpRangeThresholds,
) -> Classification:
    """Tier a liquidity position by where the pool tick sits relative to its range."""
    if status == RangeStatus.INACTIVE:
        return Classification(Tier.UNKNOWN, "position inactive (zero liquidity)")
    if status == RangeStatus.UNKNOWN:
        return Classification(Tier.UNKNOWN, "range not computed")
    if tick_lower is None or tick_upper is None or current_tick is None:
        return Classification(Tier.UNKNOWN, "range not computed")

    width = tick_upper - tick_lower
    if width <= 0:
        return Classification(Tier.UNKNOWN, "invalid tick geometry (non-positive width)")

    if status == RangeStatus.IN_RANGE:
        position_frac = (current_tick - tick_lower) / width
        center_distance = min(position_frac, 1 - position_frac)
        if not math.isfinite(center_distance) or center_distance < 0:
            return Classification(
                Tier.UNKNOWN,
                "invalid in-range tick geometry",
                position_frac=position_frac,
            )
        if center_distance <= thresholds.edge_high:
            tier, label = Tier.HIGH, "in range and very close to edge"
        elif center_distance <= thresholds.edge_warn:
            tier, label = Tier.MEDIUM, "in range but near edge"
        else:
            tier, label = Tier.LOW, "comfortably in range"
        return Classification(tier, label, position_frac=position_frac, distance_frac=center_distance)

    if current_tick < tick_lower:
        distance_ticks = tick_lower - current_tick
    else:
        distance_ticks = current_tick - tick_upper
    distance_frac = distance_ticks / width
    if not math.isfinite(distance_frac) or distance_frac < 0:
        return Classification(Tier.UNKNOWN, "invalid out-of-range tick geometry", distance_frac=distance_frac)

    if distance_frac <= thresholds.out_warn:
        tier, label = Tier.MEDIUM, "slightly out of range"
    elif distance_frac <= thresholds.out_high:
        tier, label = Tier.HIGH, "far out of range"
    else:
        tier, label = Tier.CRITICAL, "deeply out of range"
    return Classification(tier, label, distance_frac=distance_frac)


@dataclass(frozen=True)
class LoanRisk:
    """Both risk axes of one loan."""

    liquidation: Classification
    redemption: Classification


class RiskClassifier:
    """Bundles configured thresholds and an override strategy.

    The classifier is the single place where effective (possibly
    overridden) inputs are derived before the pure tiering functions run.
    """

    def __init__(
        self,
        *,
        liquidation: LiquidationThresholds,
        redemption: RedemptionThresholds,
        lp_range: LpRangeThresholds,
        overrides: RiskOverrides | None = None,
    ) -> None:
        self.liquidation = liquidation
        self.redemption = redemption
        self.lp_range = lp_range
        self.overrides = overrides or NO_OVERRIDES

    def classify_loan(
        self,
        *,
        protocol: str,
        price: float | None,
        liquidation_price: float | None,
        debt_ahead_frac: float | None,
    ) -> LoanRisk:
        """Classify liquidation and redemption risk using effective inputs."""
        effective_price = self.overrides.effective_price(protocol, price)
        buffer = liquidation_buffer_frac(effective_price, liquidation_price)
        effective_ahead = self.overrides.effective_debt_ahead_frac(protocol, debt_ahead_frac)
        return LoanRisk(
            liquidation=classify_liquidation(buffer, self.liquidation),
            redemption=classify_redemption(effective_ahead, self.redemption),
        )

    def classify_lp(
        self,
        *,
        protocol: str,
        liquidity: int | float | None,
        tick_lower: int | None,
        tick_upper: int | None,
        current_tick: int | None,
    ) -> tuple[RangeStatus, Classification]:
        """Derive range status and tier using the effective (possibly shifted) pool tick."""
        effective_tick = self.overrides.effective_tick(protocol, current_tick, tick_lower, tick_upper)
        status = derive_range_status(
            liquidity=liquidity,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            current_tick=effective_tick,
        )
        classification = classify_lp_range(
            status=status,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            current_tick=effective_tick,
            thresholds=self.lp_range,
        )
        return status, classification

