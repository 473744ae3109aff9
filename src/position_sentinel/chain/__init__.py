"""Chain access layer - JSON-RPC client, retry policy and ABIs."""

from position_sentinel.chain.client import ChainClient, ChainClientRegistry, RateLimiter
from position_sentinel.chain.errors import (
    ChainClientError,
    ChainNotConfiguredError,
    RateLimitError,
    RPCError,
)
from position_sentinel.chain.retry import (
    RetryPolicy,
    call_with_retry,
    is_rate_limit_error,
    is_retryable_error,
    parse_retry_after,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainClientRegistry",
    "ChainNotConfiguredError",
    "RPCError",
    "RateLimitError",
    "RateLimiter",
    "RetryPolicy",
    "call_with_retry",
    "is_rate_limit_error",
    "is_retryable_error",
    "parse_retry_after",
]
