"""Exceptions raised by the chain access layer."""


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails with a non-retryable error or on every endpoint."""


class RateLimitError(ChainClientError):
    """Raised when a throttled call is still throttled after the retry bound."""


class ChainNotConfiguredError(ChainClientError):
    """Raised when no RPC endpoint is configured for a chain."""
