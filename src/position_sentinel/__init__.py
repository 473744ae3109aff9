"""Position Sentinel - on-chain loan and liquidity-position risk monitor."""

__version__ = "0.1.0"
