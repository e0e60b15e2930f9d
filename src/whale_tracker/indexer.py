"""Block indexer for tracked whale wallets.

This module provides the Indexer class that polls a chain for new blocks,
matches transactions against the tracked-wallet set, prices them in USD,
classifies them, and writes whale events to the store.

Indexer flow:
    Chain head → Blocks → Transactions → Tracked-wallet match → USD value → Event store
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from whale_tracker.chain.client import EvmChainClient
from whale_tracker.chain.models import ChainReader, ChainTransaction
from whale_tracker.config import Settings, get_settings
from whale_tracker.errors import ConfigurationError
from whale_tracker.events import create_event
from whale_tracker.models import (
    DEFAULT_THRESHOLDS,
    NATIVE_ASSETS,
    Chain,
    EventType,
    Thresholds,
    Transfer,
    Wallet,
    WhaleEvent,
)
from whale_tracker.pricing.oracle import PriceOracle
from whale_tracker.storage.store import EventStore
from whale_tracker.wallets.registry import InMemoryWalletRegistry, WalletRegistry

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_PRICE_REFRESH_POLLS = 10

NATIVE_TOKEN = "native"


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    polls: int = 0
    blocks_scanned: int = 0
    transactions_seen: int = 0
    events_written: int = 0
    errors: int = 0
    last_poll_at: datetime | None = None
    last_error: str | None = None


class Indexer:
    """Polls one chain and records whale events for tracked wallets.

    The indexer owns its collaborators: :meth:`stop` closes the store, the
    chain reader and the price oracle.

    Example:
        ```python
        indexer = Indexer.from_settings(get_settings())

        await indexer.start()
        # Indexer polls until stop() is called
        await indexer.stop()
        ```
    """

    def __init__(
        self,
        chain_reader: ChainReader | None,
        store: EventStore,
        oracle: PriceOracle,
        registry: WalletRegistry,
        *,
        chain: Chain = Chain.ETHEREUM,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        price_refresh_polls: int = DEFAULT_PRICE_REFRESH_POLLS,
        thresholds: Thresholds = DEFAULT_THRESHOLDS,
        min_value_usd: float | None = None,
        native_price_fallback_usd: float | None = None,
        start_block: int | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            chain_reader: Chain access, or None when the chain has no endpoint.
            store: Event store to write to.
            oracle: Price oracle for the native asset.
            registry: Source of tracked wallets.
            chain: Chain to index.
            poll_interval_seconds: Delay between poll iterations.
            price_refresh_polls: Refresh the native price every N polls.
            thresholds: Significance thresholds.
            min_value_usd: Admission bar; defaults to ``thresholds.low``.
            native_price_fallback_usd: Price to assume until one is fetched.
            start_block: Resume after this height instead of the chain head.
        """
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if price_refresh_polls < 1:
            raise ValueError("price_refresh_polls must be >= 1")

        self._chain_reader = chain_reader
        self._store = store
        self._oracle = oracle
        self._registry = registry
        self._chain = chain
        self._native_asset = NATIVE_ASSETS[chain]
        self._poll_interval = poll_interval_seconds
        self._price_refresh_polls = price_refresh_polls
        self._thresholds = thresholds
        self._min_value_usd = min_value_usd if min_value_usd is not None else thresholds.low
        self._native_price_fallback = native_price_fallback_usd

        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()
        self._last_block: int | None = start_block
        self._native_price: float | None = None
        self._tracked: dict[str, Wallet] = {}

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        registry: WalletRegistry | None = None,
        chain: Chain | None = None,
    ) -> Indexer:
        """Build an indexer and its collaborators from settings.

        A chain without an RPC endpoint still builds; :meth:`start` then
        refuses to run.
        """
        settings = settings or get_settings()
        chain = chain or settings.indexer.chain

        if registry is None:
            memory_registry = InMemoryWalletRegistry()
            if settings.seed_default_wallets:
                memory_registry.seed_default_wallets()
            registry = memory_registry

        chain_reader: ChainReader | None = None
        try:
            rpc_url = settings.chains.rpc_url_for(chain)
        except ConfigurationError as e:
            logger.error("%s", e)
        else:
            redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
            chain_reader = EvmChainClient(
                rpc_url,
                fallback_rpc_url=settings.chains.fallback_rpc_url_for(chain),
                chain_name=chain.value,
                redis=redis,
                owns_redis=redis is not None,
            )

        oracle = PriceOracle(
            base_url=settings.price.coingecko_base_url,
            cache_ttl_seconds=settings.price.cache_ttl_seconds,
            request_timeout_seconds=settings.price.request_timeout_seconds,
        )

        return cls(
            chain_reader,
            EventStore.from_url(settings.database.url),
            oracle,
            registry,
            chain=chain,
            poll_interval_seconds=settings.indexer.poll_interval_seconds,
            price_refresh_polls=settings.indexer.price_refresh_polls,
            thresholds=settings.thresholds.to_thresholds(),
            min_value_usd=settings.min_value_usd,
            native_price_fallback_usd=settings.indexer.native_price_fallback_usd,
        )

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if indexer is running."""
        return self._state == IndexerState.RUNNING

    @property
    def chain(self) -> Chain:
        return self._chain

    @property
    def last_block(self) -> int | None:
        """Highest block height fully processed."""
        return self._last_block

    @property
    def native_price(self) -> float | None:
        return self._native_price

    @property
    def tracked_addresses(self) -> set[str]:
        return set(self._tracked)

    def _require_reader(self) -> ChainReader:
        if self._chain_reader is None:
            raise ConfigurationError(f"No RPC endpoint configured for chain {self._chain.value}")
        return self._chain_reader

    async def start(self) -> None:
        """Start the indexer.

        Snapshots tracked wallets, prices the native asset, anchors at the
        chain head (or ``start_block``) and launches the poll loop.

        Raises:
            RuntimeError: If the indexer is not stopped.
            ConfigurationError: If the chain has no RPC endpoint.
        """
        if self._state != IndexerState.STOPPED:
            raise RuntimeError(f"Cannot start indexer in state {self._state}")

        reader = self._require_reader()

        self._state = IndexerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer for %s...", self._chain.value)

        try:
            await self._store.init_schema()
            self.refresh_tracked_wallets()
            await self.refresh_native_price()
            if self._last_block is None:
                self._last_block = await reader.get_current_block_height()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer: %s", e)
            await self._cleanup()
            self._stop_event = None
            self._state = IndexerState.STOPPED
            raise

        self._stats.started_at = datetime.now(UTC)
        self._state = IndexerState.RUNNING
        self._poll_task = asyncio.create_task(self._run_poll_loop())
        logger.info(
            "Indexer started at block %d tracking %d wallets",
            self._last_block,
            len(self._tracked),
        )

    async def stop(self) -> None:
        """Stop the indexer gracefully.

        Lets an in-flight iteration finish, then closes collaborators. No
        block is fetched after this returns.
        """
        if self._state in (IndexerState.STOPPED, IndexerState.STOPPING):
            return

        self._state = IndexerState.STOPPING
        logger.info("Stopping indexer...")

        if self._stop_event:
            self._stop_event.set()

        if self._poll_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        await self._cleanup()

        self._state = IndexerState.STOPPED
        logger.info("Indexer stopped at block %s", self._last_block)

    async def _cleanup(self) -> None:
        try:
            await self._store.close()
        except Exception as e:
            logger.warning("Failed to close event store: %s", e)

        aclose = getattr(self._chain_reader, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except Exception as e:
                logger.warning("Failed to close chain client: %s", e)

        try:
            await self._oracle.aclose()
        except Exception as e:
            logger.warning("Failed to close price oracle: %s", e)

    async def _run_poll_loop(self) -> None:
        if not self._stop_event:
            return

        while not self._stop_event.is_set():
            try:
                if self._stats.polls % self._price_refresh_polls == 0:
                    await self.refresh_native_price()
                await self.poll_once()
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.exception("Poll iteration failed: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
                break
            except TimeoutError:
                pass

    def refresh_tracked_wallets(self) -> int:
        """Snapshot the registry's wallets for this chain.

        Returns:
            Number of tracked addresses.
        """
        self._tracked = {w.address.lower(): w for w in self._registry.get_wallets(self._chain)}
        logger.debug("Tracking %d wallets on %s", len(self._tracked), self._chain.value)
        return len(self._tracked)

    async def refresh_native_price(self) -> float | None:
        """Refresh the cached native asset price.

        A zero quote (no price source reachable and nothing cached) keeps
        the previous price, or the configured fallback if there is none.
        """
        price = await self._oracle.get_native_price(self._chain)
        if price > 0:
            self._native_price = price
            logger.debug("%s price: $%.2f", self._native_asset.symbol, price)
        elif self._native_price is None and self._native_price_fallback is not None:
            self._native_price = self._native_price_fallback
            logger.warning(
                "No %s price available; using fallback $%.2f",
                self._native_asset.symbol,
                self._native_price_fallback,
            )
        elif self._native_price is None:
            logger.warning(
                "No %s price and no INDEXER_NATIVE_PRICE_FALLBACK_USD set; "
                "transfers value at $0 and no events are recorded until a price is fetched",
                self._native_asset.symbol,
            )
        else:
            logger.warning("No fresh %s price; keeping $%.2f", self._native_asset.symbol, self._native_price)
        return self._native_price

    async def poll_once(self) -> int:
        """Process every block between the last processed height and the head.

        ``last_block`` only advances once all blocks were processed, so a
        failed write makes the whole range retry on the next poll.

        Returns:
            Number of blocks processed.
        """
        reader = self._require_reader()
        self._stats.polls += 1
        self._stats.last_poll_at = datetime.now(UTC)

        head = await reader.get_current_block_height()
        if self._last_block is None:
            self._last_block = head
            return 0
        if head <= self._last_block:
            return 0

        start = self._last_block + 1
        for height in range(start, head + 1):
            block = await reader.get_block_with_transactions(height)
            for tx in block.transactions:
                self._stats.transactions_seen += 1
                await self.process_transaction(tx, block.timestamp)
            self._stats.blocks_scanned += 1

        self._last_block = head
        logger.debug("Processed blocks %d-%d", start, head)
        return head - start + 1

    def to_usd(self, raw_value: int | str) -> float:
        """Convert a raw native amount (wei, lamports) to USD."""
        if self._native_price is None:
            return 0.0
        amount = Decimal(raw_value) / (Decimal(10) ** self._native_asset.decimals)
        return float(amount * Decimal(str(self._native_price)))

    async def process_transaction(self, tx: ChainTransaction, block_timestamp: int) -> list[WhaleEvent]:
        """Emit events for the tracked sides of one transaction.

        Insert errors propagate to the caller.

        Args:
            tx: The transaction.
            block_timestamp: Timestamp of the containing block (unix seconds).

        Returns:
            Events written, empty when no tracked wallet is involved or the
            value is below the admission bar.
        """
        from_lower = (tx.from_address or "").lower()
        to_lower = (tx.to_address or "").lower()
        from_wallet = self._tracked.get(from_lower) if from_lower else None
        to_wallet = self._tracked.get(to_lower) if to_lower else None

        if from_wallet is None and to_wallet is None:
            return []

        value_usd = self.to_usd(tx.value)
        if value_usd < self._min_value_usd:
            logger.debug(
                "Skipping %s: $%.2f below minimum $%.2f",
                tx.hash,
                value_usd,
                self._min_value_usd,
            )
            return []

        transfer = Transfer(
            hash=tx.hash,
            chain=self._chain,
            from_address=tx.from_address or "",
            to_address=tx.to_address or "",
            value=str(tx.value),
            value_usd=value_usd,
            token=NATIVE_TOKEN,
            token_symbol=self._native_asset.symbol,
            block_number=tx.block_number,
            timestamp=block_timestamp,
        )

        now_ms = int(time.time() * 1000)
        sides: list[tuple[Wallet, EventType]] = []
        if from_wallet is not None:
            sides.append((from_wallet, EventType.TRANSFER_OUT))
        if to_wallet is not None:
            sides.append((to_wallet, EventType.TRANSFER_IN))

        events: list[WhaleEvent] = []
        for wallet, event_type in sides:
            event = create_event(
                transfer,
                wallet.address,
                wallet.label,
                event_type=event_type,
                thresholds=self._thresholds,
                now_ms=now_ms,
            )
            await self._store.insert(event)
            self._stats.events_written += 1
            events.append(event)
            logger.info(
                "Whale event [%s] %s %s $%.0f (%s)",
                event.significance.value,
                wallet.display_name,
                event_type.value,
                value_usd,
                tx.hash,
            )

        return events

    async def run(self) -> None:
        """Start the indexer and run until stopped.

        Example:
            ```python
            indexer = Indexer.from_settings()
            try:
                await indexer.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Signal the poll loop to stop; :meth:`run` then cleans up."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> Indexer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
