"""Raw on-chain position state, before classification."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LoanState:
    """State of one trove-style loan.

    Amounts are in whole token units (already scaled by 1e18).
    """

    collateral: float
    debt: float
    interest_rate: float | None
    price: float | None
    mcr: float
    debt_ahead: float | None = None
    total_debt: float | None = None
    is_active: bool = True

    @property
    def liquidation_price(self) -> float | None:
        """Collateral price at which the loan hits the minimum collateral ratio."""
        if self.collateral <= 0:
            return None
        return self.debt * self.mcr / self.collateral

    def ltv_pct(self, price: float | None = None) -> float | None:
        price = self.price if price is None else price
        if price is None or price <= 0 or self.collateral <= 0:
            return None
        return self.debt / (self.collateral * price) * 100.0

    @property
    def debt_ahead_frac(self) -> float | None:
        if self.debt_ahead is None or not self.total_debt:
            return None
        return self.debt_ahead / self.total_debt


@dataclass
class LpState:
    """State of one concentrated-liquidity position (NFT or vault share)."""

    liquidity: int
    tick_lower: int | None
    tick_upper: int | None
    token0: str | None = None
    token1: str | None = None
    token0_symbol: str | None = None
    token1_symbol: str | None = None
    fee: int | None = None
    pool_address: str | None = None
    current_tick: int | None = None
    amount0: float | None = None
    amount1: float | None = None
    fees0: float | None = None
    fees1: float | None = None
    pool_liquidity: int | None = None

    @property
    def pool_liquidity_share(self) -> float | None:
        """Share of the pool's in-range liquidity, when the position is in range."""
        if not self.pool_liquidity or self.current_tick is None:
            return None
        if self.tick_lower is None or self.tick_upper is None:
            return None
        if not (self.tick_lower <= self.current_tick < self.tick_upper):
            return None
        return self.liquidity / self.pool_liquidity
