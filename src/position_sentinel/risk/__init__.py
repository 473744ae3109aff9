"""Risk classification layer - pure tiering of snapshot numbers."""

from position_sentinel.risk.classifier import (
    LiquidationThresholds,
    LoanRisk,
    LpRangeThresholds,
    RedemptionThresholds,
    RiskClassifier,
    classify_liquidation,
    classify_lp_range,
    classify_redemption,
    derive_range_status,
    liquidation_buffer_frac,
)
from position_sentinel.risk.models import Classification, RangeStatus, Tier, tier_at_least
from position_sentinel.risk.overrides import NO_OVERRIDES, InMemoryOverrides, RiskOverrides

__all__ = [
    "Classification",
    "InMemoryOverrides",
    "LiquidationThresholds",
    "LoanRisk",
    "LpRangeThresholds",
    "NO_OVERRIDES",
    "RangeStatus",
    "RedemptionThresholds",
    "RiskClassifier",
    "RiskOverrides",
    "Tier",
    "classify_liquidation",
    "classify_lp_range",
    "classify_redemption",
    "derive_range_status",
    "liquidation_buffer_frac",
    "tier_at_least",
]
