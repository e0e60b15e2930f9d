"""USD price oracle backed by CoinGecko.

Prices are cached per symbol for a fixed TTL. Stablecoins resolve to 1.0
without touching the cache or the network. Fetch failures never raise:
callers get the last cached price, or 0 when a symbol has never been
priced, and the cache is left exactly as it was.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import aiohttp

from whale_tracker.models import NATIVE_ASSETS, Chain

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"
DEFAULT_CACHE_TTL_SECONDS = 60.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

# Map common symbols to CoinGecko ids
SYMBOL_TO_COINGECKO: dict[str, str] = {
    "ETH": "ethereum",
    "WETH": "ethereum",
    "BTC": "bitcoin",
    "WBTC": "wrapped-bitcoin",
    "USDC": "usd-coin",
    "USDT": "tether",
    "DAI": "dai",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "AAVE": "aave",
    "MKR": "maker",
    "SNX": "synthetix-network-token",
    "COMP": "compound-governance-token",
    "CRV": "curve-dao-token",
    "LDO": "lido-dao",
    "RPL": "rocket-pool",
    "ARB": "arbitrum",
    "OP": "optimism",
    "MATIC": "matic-network",
    "SOL": "solana",
}

STABLECOINS = frozenset({"USDC", "USDT", "DAI", "BUSD", "TUSD", "FRAX"})


class PriceFetchError(Exception):
    """Raised internally when a batched price request fails."""


@dataclass(frozen=True)
class PriceCacheEntry:
    symbol: str
    price: float
    fetched_at: float


class PriceOracle:
    """TTL-cached USD price lookups.

    Example:
        ```python
        oracle = PriceOracle(cache_ttl_seconds=60)
        eth = await oracle.get_price("eth")
        prices = await oracle.get_prices(["ETH", "LINK", "USDC"])
        await oracle.aclose()
        ```
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the oracle.

        Args:
            base_url: CoinGecko API base URL.
            cache_ttl_seconds: How long a fetched price stays fresh.
            request_timeout_seconds: Total HTTP timeout per batched request.
            session: Optional externally owned aiohttp session.
            clock: Monotonic clock used for cache ages.
        """
        self._base_url = base_url.rstrip("/")
        self._cache_ttl = cache_ttl_seconds
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._cache: dict[str, PriceCacheEntry] = {}

    @property
    def cache(self) -> dict[str, PriceCacheEntry]:
        """Read-only view of the cache (a copy)."""
        return dict(self._cache)

    def _fresh_entry(self, symbol: str, now: float) -> PriceCacheEntry | None:
        entry = self._cache.get(symbol)
        if entry is not None and (now - entry.fetched_at) < self._cache_ttl:
            return entry
        return None

    def _fallback_price(self, symbol: str) -> float:
        entry = self._cache.get(symbol)
        return entry.price if entry is not None else 0.0

    async def get_price(self, symbol: str) -> float:
        """Get the USD price for a single symbol (0 if unknown)."""
        prices = await self.get_prices([symbol])
        return prices.get(symbol.upper(), 0.0)

    async def get_native_price(self, chain: Chain) -> float:
        """Get the USD price of a chain's native asset."""
        return await self.get_price(NATIVE_ASSETS[chain].symbol)

    async def get_prices(self, symbols: Iterable[str]) -> dict[str, float]:
        """Get USD prices for several symbols in at most one request.

        Args:
            symbols: Asset symbols in any case.

        Returns:
            Mapping of uppercased symbol to USD price.
        """
        result: dict[str, float] = {}
        now = self._clock()
        to_fetch: list[str] = []

        for symbol in symbols:
            upper = symbol.upper()
            if upper in result or upper in to_fetch:
                continue

            if upper in STABLECOINS:
                result[upper] = 1.0
                continue

            entry = self._fresh_entry(upper, now)
            if entry is not None:
                result[upper] = entry.price
                continue

            if upper in SYMBOL_TO_COINGECKO:
                to_fetch.append(upper)
            else:
                logger.debug("No price source for symbol %s; using 0", upper)
                result[upper] = 0.0

        if not to_fetch:
            return result

        unique_ids = sorted({SYMBOL_TO_COINGECKO[s] for s in to_fetch})

        try:
            data = await self._fetch_usd_prices(unique_ids)
        except PriceFetchError as e:
            logger.warning("Price fetch failed for %s: %s", ",".join(to_fetch), e)
            for symbol in to_fetch:
                result[symbol] = self._fallback_price(symbol)
            return result

        fetched_at = self._clock()
        for symbol in to_fetch:
            coingecko_id = SYMBOL_TO_COINGECKO[symbol]
            price = _extract_usd(data, coingecko_id)
            result[symbol] = price
            self._cache[symbol] = PriceCacheEntry(symbol=symbol, price=price, fetched_at=fetched_at)

        return result

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _fetch_usd_prices(self, coingecko_ids: list[str]) -> dict[str, Any]:
        """Fetch USD prices for CoinGecko ids in one batched request.

        Raises:
            PriceFetchError: On non-200 status, bad payload or transport errors.
        """
        url = f"{self._base_url}/simple/price"
        params = {"ids": ",".join(coingecko_ids), "vs_currencies": "usd"}
        session = self._get_session()
        try:
            async with session.get(url, params=params, timeout=self._timeout) as response:
                if response.status != 200:
                    raise PriceFetchError(f"CoinGecko API error: HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise PriceFetchError(f"CoinGecko request failed: {e}") from e

        if not isinstance(data, dict):
            raise PriceFetchError("Unexpected CoinGecko response shape")
        return data

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        """Close the HTTP session if this oracle created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


def _extract_usd(data: dict[str, Any], coingecko_id: str) -> float:
    entry = data.get(coingecko_id)
    if not isinstance(entry, dict):
        return 0.0
    try:
        return float(entry.get("usd") or 0.0)
    except (TypeError, ValueError):
        return 0.0
