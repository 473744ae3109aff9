"""Injectable numeric overrides used to simulate risk conditions.

Production code runs with ``NO_OVERRIDES`` (identity transform). Test and
drill tooling can pass an ``InMemoryOverrides`` instance through the call
chain to shift effective inputs without touching chain state or storage.
Overrides are process-local and never persisted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Protocol


class RiskOverrides(Protocol):
    """Strategy consulted by the classifier for effective numeric inputs."""

    def effective_price(self, protocol: str, price: float | None) -> float | None: ...

    def effective_debt_ahead_frac(self, protocol: str, debt_ahead_frac: float | None) -> float | None: ...

    def effective_interest_rate(self, protocol: str, interest_rate: float | None) -> float | None: ...

    def effective_tick(
        self,
        protocol: str,
        current_tick: int | None,
        tick_lower: int | None,
        tick_upper: int | None,
    ) -> int | None: ...


class NoOverrides:
    """Identity transform."""

    def effective_price(self, protocol: str, price: float | None) -> float | None:
        return price

    def effective_debt_ahead_frac(self, protocol: str, debt_ahead_frac: float | None) -> float | None:
        return debt_ahead_frac

    def effective_interest_rate(self, protocol: str, interest_rate: float | None) -> float | None:
        return interest_rate

    def effective_tick(
        self,
        protocol: str,
        current_tick: int | None,
        tick_lower: int | None,
        tick_upper: int | None,
    ) -> int | None:
        return current_tick


NO_OVERRIDES = NoOverrides()


@dataclass
class OverrideValues:
    """One set of offsets.

    Attributes:
        interest_rate_offset_pp: Added to the annual interest rate, in percentage points.
        debt_ahead_offset_pp: Added to debt-ahead, in percentage points of total debt.
        price_multiplier: Multiplies the collateral price.
        tick_shift_pct_of_width: Shifts the pool tick by this percentage of range width.
    """

    interest_rate_offset_pp: float = 0.0
    debt_ahead_offset_pp: float = 0.0
    price_multiplier: float = 1.0
    tick_shift_pct_of_width: float = 0.0

    def is_identity(self) -> bool:
        return (
            self.interest_rate_offset_pp == 0.0
            and self.debt_ahead_offset_pp == 0.0
            and self.price_multiplier == 1.0
            and self.tick_shift_pct_of_width == 0.0
        )


@dataclass
class InMemoryOverrides:
    """Adjustable overrides: a global set plus optional per-protocol sets.

    A per-protocol set replaces the global set for that protocol; sets are
    not combined.

    Example:
        ```python
        overrides = InMemoryOverrides()
        overrides.set(price_multiplier=0.8)
        overrides.set("ENOSYS_CDP", debt_ahead_offset_pp=-5)
        classifier = RiskClassifier(..., overrides=overrides)
        ```
    """

    global_values: OverrideValues = field(default_factory=OverrideValues)
    per_protocol: dict[str, OverrideValues] = field(default_factory=dict)

    def set(self, protocol: str | None = None, **values: float) -> OverrideValues:
        """Update the global set, or the set for ``protocol``."""
        if protocol is None:
            target = self.global_values
        else:
            target = self.per_protocol.setdefault(protocol.upper(), OverrideValues())
        for name, value in values.items():
            if not hasattr(target, name):
                raise ValueError(f"Unknown override {name!r}")
            if not math.isfinite(float(value)):
                raise ValueError(f"Override {name} must be finite")
            setattr(target, name, float(value))
        if target.price_multiplier <= 0:
            raise ValueError("price_multiplier must be > 0")
        return target

    def reset(self) -> None:
        """Drop every override."""
        self.global_values = OverrideValues()
        self.per_protocol.clear()

    def values_for(self, protocol: str) -> OverrideValues:
        return self.per_protocol.get(protocol.upper(), self.global_values)

    def effective_price(self, protocol: str, price: float | None) -> float | None:
        if price is None:
            return None
        return price * self.values_for(protocol).price_multiplier

    def effective_debt_ahead_frac(self, protocol: str, debt_ahead_frac: float | None) -> float | None:
        if debt_ahead_frac is None:
            return None
        offset_pp = self.values_for(protocol).debt_ahead_offset_pp
        if offset_pp == 0.0:
            return debt_ahead_frac
        return min(1.0, max(0.0, debt_ahead_frac + offset_pp / 100.0))

    def effective_interest_rate(self, protocol: str, interest_rate: float | None) -> float | None:
        if interest_rate is None:
            return None
        return max(0.0, interest_rate + self.values_for(protocol).interest_rate_offset_pp / 100.0)

    def effective_tick(
        self,
        protocol: str,
        current_tick: int | None,
        tick_lower: int | None,
        tick_upper: int | None,
    ) -> int | None:
        if current_tick is None or tick_lower is None or tick_upper is None:
            return current_tick
        shift_pct = self.values_for(protocol).tick_shift_pct_of_width
        if shift_pct == 0.0:
            return current_tick
        return current_tick + round((tick_upper - tick_lower) * shift_pct / 100.0)
