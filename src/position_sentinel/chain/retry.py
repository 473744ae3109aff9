"""Rate-limit aware retry for JSON-RPC calls.

Provider errors are split in two classes:
- retryable: throttling responses (HTTP 429, "too many requests",
  "rate limit", "retry in N s", JSON-RPC code -32090) and timeouts;
- fatal: everything else, re-raised on the first occurrence.

Retryable errors back off exponentially from ``base_delay``, doubling up to
``max_delay``. A server-suggested ``retry in N s`` duration replaces the
computed delay. Both the attempt count and the summed backoff are bounded;
crossing either bound raises ``RateLimitError``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from position_sentinel.chain.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "retry in",
    "-32090",
)

_RETRY_IN_RE = re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)


def _error_text(error: BaseException) -> str:
    parts = [str(error)]
    # web3 RPC errors carry the JSON-RPC payload in args[0] / rpc_response.
    rpc_response = getattr(error, "rpc_response", None)
    if rpc_response:
        parts.append(str(rpc_response))
    return " ".join(parts).lower()


def is_rate_limit_error(error: BaseException) -> bool:
    """Check whether an error message indicates provider throttling."""
    if getattr(error, "status", None) == 429:
        return True
    text = _error_text(error)
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def is_timeout_error(error: BaseException) -> bool:
    return isinstance(error, TimeoutError)


def is_retryable_error(error: BaseException) -> bool:
    return is_rate_limit_error(error) or is_timeout_error(error)


def parse_retry_after(error: BaseException) -> float | None:
    """Extract a server-suggested ``retry in N s`` delay, in seconds."""
    match = _RETRY_IN_RE.search(_error_text(error))
    if match is None:
        return None
    return float(match.group(1))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds for retrying throttled calls."""

    max_attempts: int = 6
    base_delay: float = 0.6
    max_delay: float = 10.0
    max_total_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay <= 0 or self.max_delay <= 0 or self.max_total_delay <= 0:
            raise ValueError("retry delays must be > 0")

    def backoff(self, attempt: int) -> float:
        """Computed delay after the ``attempt``-th failure (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def delay_for(self, attempt: int, error: BaseException) -> float:
        suggested = parse_retry_after(error)
        if suggested is not None:
            return suggested
        return self.backoff(attempt)


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` until it succeeds, a fatal error occurs, or the bounds are hit.

    Args:
        func: Zero-argument coroutine factory performing one attempt.
        policy: Attempt and backoff bounds.
        description: Short name of the call, used in logs and errors.
        sleep: Sleep coroutine (injectable for tests).

    Returns:
        Result of the first successful attempt.

    Raises:
        RateLimitError: If retryable failures exhaust the attempt or delay bound.
        Exception: The first non-retryable error, unchanged.
    """
    total_delay = 0.0
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                raise
            if attempt >= policy.max_attempts:
                raise RateLimitError(
                    f"{description} still throttled after {attempt} attempts: {e}"
                ) from e
            delay = policy.delay_for(attempt, e)
            if total_delay + delay > policy.max_total_delay:
                raise RateLimitError(
                    f"{description} exceeded retry budget of {policy.max_total_delay:.1f}s: {e}"
                ) from e
            total_delay += delay
            logger.warning(
                "%s throttled (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                policy.max_attempts,
                delay,
                e,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
