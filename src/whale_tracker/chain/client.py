"""EVM chain client with rate limiting, retries and failover.

This module provides the chain-access collaborator used by the indexer:
- Current head height and full-transaction block fetches
- Optional Redis caching of immutable block payloads
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to a secondary RPC URL
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from whale_tracker.chain.models import Block, ChainTransaction
from whale_tracker.errors import TransientUpstreamError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_PRIMARY_RECOVERY_SECONDS = 60.0

# Blocks are immutable once served (reorgs are not handled), so cache them long.
BLOCK_CACHE_TTL_SECONDS = 3600

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
    OSError,
)


class ChainClientError(TransientUpstreamError):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


class MalformedBlockError(ChainClientError):
    """Raised when a block payload is missing required fields."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
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
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def block_from_rpc(raw: Any) -> Block:
    """Normalize a web3 block (fetched with full transactions) into a Block.

    Raises:
        MalformedBlockError: If required fields are missing or the block
            was fetched without full transaction objects.
    """
    try:
        number = int(raw["number"])
        timestamp = int(raw["timestamp"])
        raw_txs = raw.get("transactions") or []
        transactions: list[ChainTransaction] = []
        for tx in raw_txs:
            if isinstance(tx, (bytes, str)):
                raise MalformedBlockError(f"Block {number} returned transaction hashes only")
            to_address = tx.get("to")
            from_address = tx.get("from")
            transactions.append(
                ChainTransaction(
                    hash=_to_hex(tx["hash"]),
                    from_address=str(from_address) if from_address else None,
                    to_address=str(to_address) if to_address else None,
                    value=int(tx.get("value") or 0),
                    block_number=int(tx.get("blockNumber") or number),
                )
            )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedBlockError(f"Malformed block payload: {e}") from e
    return Block(number=number, timestamp=timestamp, transactions=tuple(transactions))


class EvmChainClient:
    """EVM chain client with caching, rate limiting and failover.

    Exposes exactly the two calls the indexer needs, plus health and
    lifecycle helpers. All failures surface as :class:`ChainClientError`
    (a :class:`TransientUpstreamError`), never as raw web3 exceptions.

    Example:
        ```python
        client = EvmChainClient(
            "https://eth.drpc.org",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
            chain_name="ethereum",
        )
        head = await client.get_current_block_height()
        block = await client.get_block_with_transactions(head)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        chain_name: str = "ethereum",
        redis: Redis | None = None,
        owns_redis: bool = False,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            chain_name: Chain name, used to namespace cache keys.
            redis: Optional Redis client for block caching.
            owns_redis: Close the Redis client in :meth:`aclose`.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._owns_redis = owns_redis
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3: AsyncWeb3[AsyncHTTPProvider] = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = DEFAULT_PRIMARY_RECOVERY_SECONDS

        self._cache_prefix = f"whale:{chain_name}:"

    def _block_cache_key(self, height: int) -> str:
        return f"{self._cache_prefix}block:{height}"

    async def _get_cached(self, key: str) -> str | None:
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

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        # Periodically retry primary
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_with_retries(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[Any]],
        endpoint: str,
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return True, await call(w3), None
            except _RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(
        self,
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[Any]],
    ) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            label: Call name used in logs and errors.
            call: Coroutine factory taking the web3 instance to use.

        Returns:
            Result from the RPC call.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_with_retries(self._w3, label, call, "Primary")
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, fallback_error = await self._call_with_retries(
                self._w3_fallback, label, call, "Fallback"
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", label)
                return result
            last_error = fallback_error

        raise RPCError(f"RPC call {label} failed after all retries: {last_error}")

    async def get_current_block_height(self) -> int:
        """Get the current chain head height.

        Never cached: the head moves every block.
        """
        height = await self._execute_with_retry("block_number", lambda w3: w3.eth.block_number)
        return int(height)

    async def get_block_with_transactions(self, height: int) -> Block:
        """Get a block with its full transaction list.

        Args:
            height: Block number.

        Returns:
            Normalized Block.

        Raises:
            RPCError: If the block cannot be fetched.
            MalformedBlockError: If the payload cannot be normalized.
        """
        if height < 0:
            raise ValueError("height must be >= 0")

        cache_key = self._block_cache_key(height)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            try:
                return Block.from_dict(json.loads(cached))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding corrupt cached block %d: %s", height, e)

        raw = await self._execute_with_retry(
            "get_block",
            lambda w3: w3.eth.get_block(height, full_transactions=True),
        )
        block = block_from_rpc(raw)

        await self._set_cached(cache_key, json.dumps(block.to_dict()), ttl=BLOCK_CACHE_TTL_SECONDS)
        return block

    async def health_check(self) -> bool:
        """Check if the client can reach an RPC endpoint."""
        try:
            await self.get_current_block_height()
            return True
        except RPCError:
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

        if self._redis is not None and self._owns_redis:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning("Failed to close Redis client: %s", e)
            self._redis = None
