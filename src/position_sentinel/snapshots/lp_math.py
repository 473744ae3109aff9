"""Concentrated-liquidity math (Uniswap v3 style) on floats.

Results are in raw token units; divide by ``10**decimals`` for display.
"""

from __future__ import annotations

import math

Q96 = 2**96
TICK_BASE = 1.0001


def sqrt_price_at_tick(tick: int) -> float:
    """sqrt(1.0001^tick)."""
    return math.pow(TICK_BASE, tick / 2)


def sqrt_price_from_x96(sqrt_price_x96: int) -> float:
    return sqrt_price_x96 / Q96


def amounts_for_liquidity(
    liquidity: int,
    sqrt_price: float,
    tick_lower: int,
    tick_upper: int,
) -> tuple[float, float]:
    """Token amounts held by ``liquidity`` between two ticks at ``sqrt_price``.

    Below the range the position is all token0, above it all token1.
    """
    if liquidity <= 0 or tick_upper <= tick_lower:
        return 0.0, 0.0

    sa = sqrt_price_at_tick(tick_lower)
    sb = sqrt_price_at_tick(tick_upper)

    if sqrt_price <= sa:
        amount0 = liquidity * (sb - sa) / (sa * sb)
        return amount0, 0.0
    if sqrt_price < sb:
        amount0 = liquidity * (sb - sqrt_price) / (sqrt_price * sb)
        amount1 = liquidity * (sqrt_price - sa)
        return amount0, amount1
    return 0.0, liquidity * (sb - sa)


def scale(raw: int | float, decimals: int) -> float:
    return float(raw) / (10**decimals)
