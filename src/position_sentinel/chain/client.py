"""EVM JSON-RPC client with rate limiting, retry, failover and caching.

This module provides one client per chain with:
- Token-bucket rate limiting to respect provider limits
- Rate-limit aware retry with bounded exponential backoff
- Failover to a secondary RPC URL when the primary is unhealthy
- Optional Redis caching of immutable lookups (code at a historical block)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from position_sentinel.chain.errors import ChainNotConfiguredError, RateLimitError, RPCError
from position_sentinel.chain.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_REQUEST_TIMEOUT = 30

# Cache TTL for the chain head (fast-changing)
HEAD_CACHE_TTL_SECONDS = 2
# Code presence at a past block never changes (absent self-destruct)
CODE_CACHE_TTL_SECONDS = 7 * 24 * 3600

BlockId = int | str


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            # Wait for tokens to refill
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def _is_transport_error(error: BaseException) -> bool:
    """Errors that say something about the endpoint rather than the request."""
    if isinstance(error, ContractLogicError):
        return False
    return isinstance(error, (RateLimitError, TimeoutError, aiohttp.ClientError, ConnectionError))


class ChainClient:
    """JSON-RPC client for one EVM chain.

    Example:
        ```python
        client = ChainClient(
            "FLR",
            "https://flare-api.flare.network/ext/C/rpc",
            fallback_rpc_url="https://rpc.ankr.com/flare",
            retry_policy=RetryPolicy(max_attempts=6, base_delay=0.6, max_delay=10),
        )
        head = await client.get_block_number()
        deployed = await client.has_code("0x...", head)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        chain_id: str,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        retry_policy: RetryPolicy | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the chain client.

        Args:
            chain_id: Short chain identifier (e.g. ``FLR``), used in logs and cache keys.
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            retry_policy: Bounds for retrying throttled calls.
            cache_ttl_seconds: Default cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            request_timeout_seconds: HTTP timeout for a single request.
        """
        self.chain_id = chain_id.upper()
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._retry_policy = retry_policy or RetryPolicy()
        self._cache_ttl = cache_ttl_seconds
        self._request_timeout = request_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

        self._cache_prefix = f"sentinel:chain:{self.chain_id}:"

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._request_timeout)},
        )
        client = AsyncWeb3(provider)
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        # Periodically retry primary
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    def _endpoints(self) -> list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]]:
        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._should_try_primary() or self._w3_fallback is None:
            endpoints.append(("primary", self._w3))
        if self._w3_fallback is not None:
            endpoints.append(("fallback", self._w3_fallback))
        return endpoints

    async def _execute(
        self,
        description: str,
        operation: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Execute an RPC operation with retry and failover logic.

        Throttling and timeouts are retried on each endpoint within the retry
        policy. Endpoint-level failures move on to the fallback endpoint;
        request-level failures (reverts, invalid params) are raised at once.

        Args:
            description: Short name of the call for logs and errors.
            operation: Coroutine factory taking the web3 instance to use.

        Returns:
            Result from the RPC call.

        Raises:
            RateLimitError: If every endpoint stayed throttled past the retry bound.
            RPCError: On a non-retryable error or when all endpoints fail.
        """
        last_error: Exception | None = None

        for name, w3 in self._endpoints():

            async def attempt(w3: AsyncWeb3[AsyncHTTPProvider] = w3) -> T:
                await self._rate_limiter.acquire()
                return await operation(w3)

            try:
                result = await call_with_retry(
                    attempt,
                    policy=self._retry_policy,
                    description=f"[{self.chain_id}] {description}",
                )
            except Exception as e:
                last_error = e
                if not _is_transport_error(e):
                    raise RPCError(f"[{self.chain_id}] RPC call {description} failed: {e}") from e
                logger.warning("%s RPC %s failed on %s: %s", self.chain_id, description, name, e)
                if name == "primary":
                    self._primary_healthy = False
                    self._last_primary_check = time.monotonic()
                continue

            if name == "primary":
                self._primary_healthy = True
            else:
                logger.info("Fallback RPC succeeded for %s (%s)", description, self.chain_id)
            return result

        if isinstance(last_error, RateLimitError):
            raise last_error
        raise RPCError(f"[{self.chain_id}] RPC call {description} failed after all retries: {last_error}")

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Call ``web3.eth.<func_name>(*args)`` through ``_execute``."""

        async def operation(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            method = getattr(w3.eth, func_name)
            return await method(*args)

        return await self._execute(func_name, operation)

    async def get_block_number(self) -> int:
        """Current chain head, cached very briefly."""
        cache_key = f"{self._cache_prefix}head"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        head = int(await self._execute_with_retry("get_block_number"))
        await self._set_cached(cache_key, str(head), ttl=HEAD_CACHE_TTL_SECONDS)
        return head

    async def get_code(self, address: str, block: BlockId = "latest") -> bytes:
        """Deployed bytecode of ``address`` at ``block``."""
        code = await self._execute_with_retry("get_code", AsyncWeb3.to_checksum_address(address), block)
        return bytes(code)

    async def has_code(self, address: str, block: BlockId = "latest") -> bool:
        """Whether ``address`` holds contract code at ``block``.

        Results for numbered blocks are cached; "latest" is always queried.
        """
        cache_key = f"{self._cache_prefix}code:{address.lower()}:{block}"
        if isinstance(block, int):
            cached = await self._get_cached(cache_key)
            if cached is not None:
                return cached == "1"

        present = len(await self.get_code(address, block)) > 0

        if isinstance(block, int):
            await self._set_cached(cache_key, "1" if present else "0", ttl=CODE_CACHE_TTL_SECONDS)
        return present

    async def get_logs(self, filter_params: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs`` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", dict(filter_params))
        return [dict(log) for log in logs]

    async def call(self, to: str, data: str | bytes, block: BlockId = "latest") -> bytes:
        """Raw ``eth_call``."""
        tx = {"to": AsyncWeb3.to_checksum_address(to), "data": data}
        result = await self._execute_with_retry("call", tx, block)
        return bytes(result)

    async def get_storage_at(self, address: str, slot: int, block: BlockId = "latest") -> bytes:
        """Raw storage word of ``address`` at ``slot``."""
        result = await self._execute_with_retry(
            "get_storage_at", AsyncWeb3.to_checksum_address(address), slot, block
        )
        return bytes(result)

    async def call_function(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        *args: Any,
        block: BlockId = "latest",
        tx: dict[str, Any] | None = None,
    ) -> Any:
        """Call a view function through its ABI and return the decoded result.

        Args:
            address: Contract address.
            abi: ABI containing ``fn_name``.
            fn_name: Function name.
            *args: Function arguments.
            block: Block identifier to call at.
            tx: Optional transaction fields (e.g. ``from`` for static calls of
                state-changing functions).
        """
        checksum = AsyncWeb3.to_checksum_address(address)

        async def operation(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = w3.eth.contract(address=checksum, abi=abi)
            fn = getattr(contract.functions, fn_name)(*args)
            return await fn.call(tx or {}, block_identifier=block)

        return await self._execute(f"{fn_name}@{address.lower()[:10]}", operation)

    async def health_check(self) -> bool:
        """Check if the client can reach an RPC endpoint.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self._execute_with_retry("get_block_number")
            return True
        except (RPCError, RateLimitError):
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)


class ChainClientRegistry:
    """Lazily constructed ``ChainClient`` per configured chain."""

    def __init__(
        self,
        rpc_urls: Mapping[str, str],
        *,
        fallback_rpc_urls: Mapping[str, str] | None = None,
        redis: Redis | None = None,
        retry_policy: RetryPolicy | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._rpc_urls = {k.upper(): v for k, v in rpc_urls.items()}
        self._fallback_rpc_urls = {k.upper(): v for k, v in (fallback_rpc_urls or {}).items()}
        self._redis = redis
        self._retry_policy = retry_policy
        self._max_rps = max_requests_per_second
        self._timeout = request_timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._clients: dict[str, ChainClient] = {}

    @property
    def chain_ids(self) -> list[str]:
        return sorted(self._rpc_urls)

    def get(self, chain_id: str) -> ChainClient:
        """Client for ``chain_id``.

        Raises:
            ChainNotConfiguredError: If no RPC URL is configured for the chain.
        """
        key = chain_id.upper()
        client = self._clients.get(key)
        if client is not None:
            return client
        rpc_url = self._rpc_urls.get(key)
        if not rpc_url:
            raise ChainNotConfiguredError(f"No RPC URL configured for chain {key}")
        client = ChainClient(
            key,
            rpc_url,
            fallback_rpc_url=self._fallback_rpc_urls.get(key),
            redis=self._redis,
            retry_policy=self._retry_policy,
            cache_ttl_seconds=self._cache_ttl,
            max_requests_per_second=self._max_rps,
            request_timeout_seconds=self._timeout,
        )
        self._clients[key] = client
        return client

    async def health_check(self) -> dict[str, bool]:
        """Probe every configured chain once.

        Returns:
            Mapping of chain id to whether an RPC endpoint answered.
        """
        results: dict[str, bool] = {}
        for chain_id in self.chain_ids:
            healthy = await self.get(chain_id).health_check()
            if not healthy:
                logger.warning("RPC for chain %s is unreachable", chain_id)
            results[chain_id] = healthy
        return results

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()


__all__ = [
    "BlockId",
    "ChainClient",
    "ChainClientRegistry",
    "RateLimiter",
]
