"""Tests for the block indexer."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from whale_tracker.chain.client import EvmChainClient, RPCError
from whale_tracker.chain.models import Block, ChainTransaction
from whale_tracker.config import Settings
from whale_tracker.errors import ConfigurationError
from whale_tracker.indexer import Indexer, IndexerState
from whale_tracker.models import Chain, EventType, Significance, Wallet
from whale_tracker.pricing.oracle import PriceOracle
from whale_tracker.storage.store import EventStore
from whale_tracker.wallets.registry import InMemoryWalletRegistry

STRANGER = "0x1234567890abcdef1234567890abcdef12345678"
BLOCK_TIMESTAMP = 1_700_000_000
ETH_PRICE = 2_000.0


def eth_tx(n: int, from_address: str, to_address: str | None, eth: float, block_number: int = 101) -> ChainTransaction:
    return ChainTransaction(
        hash=f"0x{n:064x}",
        from_address=from_address,
        to_address=to_address,
        value=int(eth * 10**18),
        block_number=block_number,
    )


@pytest.fixture
def mock_reader() -> AsyncMock:
    """Chain reader with head at 100 and empty blocks."""
    reader = AsyncMock()
    reader.get_current_block_height = AsyncMock(return_value=100)
    reader.get_block_with_transactions = AsyncMock(
        side_effect=lambda height: Block(number=height, timestamp=BLOCK_TIMESTAMP)
    )
    return reader


@pytest.fixture
def mock_oracle() -> MagicMock:
    oracle = MagicMock(spec=PriceOracle)
    oracle.get_native_price = AsyncMock(return_value=ETH_PRICE)
    oracle.aclose = AsyncMock()
    return oracle


@pytest.fixture
def registry(whale_a: Wallet, whale_b: Wallet) -> InMemoryWalletRegistry:
    return InMemoryWalletRegistry([whale_a, whale_b])


@pytest.fixture
async def indexer(
    mock_reader: AsyncMock,
    event_store: EventStore,
    mock_oracle: MagicMock,
    registry: InMemoryWalletRegistry,
) -> Indexer:
    """Indexer primed at block 100 without a running poll loop."""
    idx = Indexer(
        mock_reader,
        event_store,
        mock_oracle,
        registry,
        poll_interval_seconds=3600,
        start_block=100,
    )
    idx.refresh_tracked_wallets()
    await idx.refresh_native_price()
    return idx


class TestProcessTransaction:
    """Tests for Indexer.process_transaction."""

    @pytest.mark.asyncio
    async def test_untracked_transaction_ignored(self, indexer: Indexer, event_store: EventStore) -> None:
        events = await indexer.process_transaction(eth_tx(1, STRANGER, STRANGER, 10_000), BLOCK_TIMESTAMP)

        assert events == []
        assert (await event_store.query()).events == []

    @pytest.mark.asyncio
    async def test_tracked_to_tracked_yields_two_events(
        self, indexer: Indexer, event_store: EventStore, whale_a: Wallet, whale_b: Wallet
    ) -> None:
        tx = eth_tx(1, whale_a.address, whale_b.address, 100)

        events = await indexer.process_transaction(tx, BLOCK_TIMESTAMP)

        assert [(e.wallet, e.type) for e in events] == [
            (whale_a.address.lower(), EventType.TRANSFER_OUT),
            (whale_b.address.lower(), EventType.TRANSFER_IN),
        ]
        assert {e.transfer.hash for e in events} == {tx.hash}
        assert events[0].transfer.value_usd == pytest.approx(200_000.0)
        assert events[0].transfer.timestamp == BLOCK_TIMESTAMP
        assert events[0].transfer.token == "native"
        assert events[0].transfer.token_symbol == "ETH"
        assert events[0].wallet_label == "Whale A"
        assert (await event_store.query()).count == 2

    @pytest.mark.asyncio
    async def test_address_match_is_case_insensitive(self, indexer: Indexer, whale_a: Wallet) -> None:
        tx = eth_tx(1, STRANGER, whale_a.address.upper().replace("0X", "0x"), 100)

        events = await indexer.process_transaction(tx, BLOCK_TIMESTAMP)

        assert len(events) == 1
        assert events[0].type == EventType.TRANSFER_IN

    @pytest.mark.asyncio
    async def test_below_minimum_value_skipped(self, indexer: Indexer, whale_a: Wallet) -> None:
        # 4.99 ETH * $2,000 < $10,000
        events = await indexer.process_transaction(eth_tx(1, whale_a.address, STRANGER, 4.99), BLOCK_TIMESTAMP)
        assert events == []

    @pytest.mark.asyncio
    async def test_significance_from_usd_value(self, indexer: Indexer, whale_a: Wallet) -> None:
        low = await indexer.process_transaction(eth_tx(1, whale_a.address, STRANGER, 5), BLOCK_TIMESTAMP)
        high = await indexer.process_transaction(eth_tx(2, whale_a.address, STRANGER, 600), BLOCK_TIMESTAMP)

        assert low[0].significance == Significance.LOW
        assert high[0].significance == Significance.HIGH

    @pytest.mark.asyncio
    async def test_contract_creation_from_tracked_wallet(self, indexer: Indexer, whale_a: Wallet) -> None:
        events = await indexer.process_transaction(eth_tx(1, whale_a.address, None, 100), BLOCK_TIMESTAMP)

        assert len(events) == 1
        assert events[0].transfer.to_address == ""

    @pytest.mark.asyncio
    async def test_insert_errors_propagate(self, indexer: Indexer, event_store: EventStore, whale_a: Wallet) -> None:
        event_store.insert = AsyncMock(side_effect=RuntimeError("disk full"))  # type: ignore[method-assign]
        with pytest.raises(RuntimeError, match="disk full"):
            await indexer.process_transaction(eth_tx(1, whale_a.address, STRANGER, 100), BLOCK_TIMESTAMP)


class TestPollOnce:
    """Tests for Indexer.poll_once."""

    @pytest.mark.asyncio
    async def test_processes_each_new_block_once(self, indexer: Indexer, mock_reader: AsyncMock) -> None:
        mock_reader.get_current_block_height = AsyncMock(return_value=103)

        processed = await indexer.poll_once()

        assert processed == 3
        assert [c.args[0] for c in mock_reader.get_block_with_transactions.call_args_list] == [101, 102, 103]
        assert indexer.last_block == 103
        assert indexer.stats.blocks_scanned == 3

        assert await indexer.poll_once() == 0
        assert mock_reader.get_block_with_transactions.await_count == 3

    @pytest.mark.asyncio
    async def test_head_behind_is_noop(self, indexer: Indexer, mock_reader: AsyncMock) -> None:
        mock_reader.get_current_block_height = AsyncMock(return_value=99)

        assert await indexer.poll_once() == 0
        mock_reader.get_block_with_transactions.assert_not_called()
        assert indexer.last_block == 100

    @pytest.mark.asyncio
    async def test_events_written_from_blocks(
        self, indexer: Indexer, mock_reader: AsyncMock, event_store: EventStore, whale_a: Wallet
    ) -> None:
        mock_reader.get_current_block_height = AsyncMock(return_value=102)
        blocks = {
            101: Block(number=101, timestamp=BLOCK_TIMESTAMP, transactions=(eth_tx(1, whale_a.address, STRANGER, 100),)),
            102: Block(
                number=102,
                timestamp=BLOCK_TIMESTAMP + 12,
                transactions=(eth_tx(2, STRANGER, STRANGER, 100, 102), eth_tx(3, STRANGER, whale_a.address, 50, 102)),
            ),
        }
        mock_reader.get_block_with_transactions = AsyncMock(side_effect=lambda h: blocks[h])

        await indexer.poll_once()

        events = await event_store.get_by_wallet(whale_a.address)
        assert len(events) == 2
        assert indexer.stats.transactions_seen == 3
        assert indexer.stats.events_written == 2

    @pytest.mark.asyncio
    async def test_failed_write_does_not_advance(
        self, indexer: Indexer, mock_reader: AsyncMock, event_store: EventStore, whale_a: Wallet
    ) -> None:
        mock_reader.get_current_block_height = AsyncMock(return_value=101)
        mock_reader.get_block_with_transactions = AsyncMock(
            return_value=Block(number=101, timestamp=BLOCK_TIMESTAMP, transactions=(eth_tx(1, whale_a.address, STRANGER, 100),))
        )
        event_store.insert = AsyncMock(side_effect=RuntimeError("db locked"))  # type: ignore[method-assign]

        with pytest.raises(RuntimeError):
            await indexer.poll_once()
        assert indexer.last_block == 100

    @pytest.mark.asyncio
    async def test_reprocessing_is_idempotent(
        self, indexer: Indexer, mock_reader: AsyncMock, event_store: EventStore, whale_a: Wallet, whale_b: Wallet
    ) -> None:
        block = Block(number=101, timestamp=BLOCK_TIMESTAMP, transactions=(eth_tx(1, whale_a.address, whale_b.address, 100),))
        mock_reader.get_block_with_transactions = AsyncMock(return_value=block)

        for tx in block.transactions:
            await indexer.process_transaction(tx, block.timestamp)
            await indexer.process_transaction(tx, block.timestamp)

        assert (await event_store.query()).count == 2


class TestNativePrice:
    """Tests for native price refresh and USD conversion."""

    @pytest.mark.asyncio
    async def test_to_usd(self, indexer: Indexer) -> None:
        assert indexer.to_usd(10**18) == pytest.approx(ETH_PRICE)
        assert indexer.to_usd("500000000000000000") == pytest.approx(ETH_PRICE / 2)

    @pytest.mark.asyncio
    async def test_zero_quote_keeps_previous_price(self, indexer: Indexer, mock_oracle: MagicMock) -> None:
        mock_oracle.get_native_price = AsyncMock(return_value=0.0)
        assert await indexer.refresh_native_price() == ETH_PRICE

    @pytest.mark.asyncio
    async def test_fallback_used_before_first_price(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        mock_oracle.get_native_price = AsyncMock(return_value=0.0)
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, native_price_fallback_usd=1_500.0)

        assert await idx.refresh_native_price() == 1_500.0

    @pytest.mark.asyncio
    async def test_no_price_means_no_events(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock,
        registry: InMemoryWalletRegistry, whale_a: Wallet,
    ) -> None:
        mock_oracle.get_native_price = AsyncMock(return_value=0.0)
        idx = Indexer(mock_reader, event_store, mock_oracle, registry)
        idx.refresh_tracked_wallets()
        await idx.refresh_native_price()

        assert idx.native_price is None
        assert await idx.process_transaction(eth_tx(1, whale_a.address, STRANGER, 10_000), BLOCK_TIMESTAMP) == []

    @pytest.mark.asyncio
    async def test_missing_price_warns_that_events_are_suppressed(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock,
        registry: InMemoryWalletRegistry, caplog: pytest.LogCaptureFixture,
    ) -> None:
        mock_oracle.get_native_price = AsyncMock(return_value=0.0)
        idx = Indexer(mock_reader, event_store, mock_oracle, registry)

        with caplog.at_level(logging.WARNING, logger="whale_tracker.indexer"):
            await idx.refresh_native_price()

        assert "no events are recorded" in caplog.text
        assert "INDEXER_NATIVE_PRICE_FALLBACK_USD" in caplog.text


class TestLifecycle:
    """Tests for start/stop and the poll loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, poll_interval_seconds=3600)

        await idx.start()
        assert idx.state == IndexerState.RUNNING
        assert idx.is_running
        assert idx.last_block == 100
        assert len(idx.tracked_addresses) == 2

        await asyncio.sleep(0.01)
        await idx.stop()

        assert idx.state == IndexerState.STOPPED
        mock_reader.aclose.assert_awaited_once()
        mock_oracle.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_block_fetch_after_stop(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, poll_interval_seconds=0.01)
        await idx.start()
        await asyncio.sleep(0.03)
        await idx.stop()

        fetches_at_stop = mock_reader.get_block_with_transactions.await_count
        heights_at_stop = mock_reader.get_current_block_height.await_count
        mock_reader.get_current_block_height = AsyncMock(return_value=500)

        await asyncio.sleep(0.05)

        assert mock_reader.get_block_with_transactions.await_count == fetches_at_stop
        assert mock_reader.get_current_block_height.await_count == 0
        assert heights_at_stop >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_iteration_errors(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        calls = {"n": 0}

        async def head() -> int:
            calls["n"] += 1
            if calls["n"] == 1:
                return 100
            raise RPCError("rpc down")

        mock_reader.get_current_block_height = AsyncMock(side_effect=head)
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, poll_interval_seconds=0.01)

        await idx.start()
        await asyncio.sleep(0.05)

        assert idx.is_running
        assert idx.stats.errors >= 2
        assert idx.stats.last_error is not None and "rpc down" in idx.stats.last_error
        assert idx.last_block == 100
        await idx.stop()

    @pytest.mark.asyncio
    async def test_price_refreshed_on_first_poll(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, poll_interval_seconds=3600, price_refresh_polls=5)
        await idx.start()
        await asyncio.sleep(0.01)
        await idx.stop()

        # Once at start, once on the first poll
        assert mock_oracle.get_native_price.await_count == 2

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, indexer: Indexer) -> None:
        await indexer.start()
        try:
            with pytest.raises(RuntimeError):
                await indexer.start()
        finally:
            await indexer.stop()

    @pytest.mark.asyncio
    async def test_start_without_endpoint(
        self, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        idx = Indexer(None, event_store, mock_oracle, registry, chain=Chain.SOLANA)

        with pytest.raises(ConfigurationError):
            await idx.start()
        assert idx.state == IndexerState.STOPPED

    @pytest.mark.asyncio
    async def test_failed_start_releases_collaborators(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        mock_reader.get_current_block_height = AsyncMock(side_effect=RPCError("rpc down"))
        idx = Indexer(mock_reader, event_store, mock_oracle, registry)

        with pytest.raises(RPCError):
            await idx.run()
        await idx.stop()

        assert idx.state == IndexerState.STOPPED
        assert idx.stats.last_error == "rpc down"
        mock_oracle.aclose.assert_awaited_once()
        mock_reader.aclose.assert_awaited_once()
        assert event_store.db._engine is None

    @pytest.mark.asyncio
    async def test_wallets_added_after_start_are_ignored(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        newcomer = Wallet(address="0x" + "b" * 40, chain=Chain.ETHEREUM, label="Newcomer")
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, poll_interval_seconds=3600)
        await idx.start()
        try:
            registry.add_wallet(newcomer)
            events = await idx.process_transaction(eth_tx(1, STRANGER, newcomer.address, 500), BLOCK_TIMESTAMP)

            assert events == []
            assert newcomer.address not in idx.tracked_addresses
        finally:
            await idx.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, indexer: Indexer, mock_oracle: MagicMock) -> None:
        await indexer.stop()
        mock_oracle.aclose.assert_not_called()

    @pytest.mark.asyncio
    async def test_context_manager(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        async with Indexer(mock_reader, event_store, mock_oracle, registry) as idx:
            assert idx.is_running
        assert idx.state == IndexerState.STOPPED

    @pytest.mark.asyncio
    async def test_run_until_request_stop(
        self, mock_reader: AsyncMock, event_store: EventStore, mock_oracle: MagicMock, registry: InMemoryWalletRegistry
    ) -> None:
        idx = Indexer(mock_reader, event_store, mock_oracle, registry, poll_interval_seconds=3600)
        task = asyncio.create_task(idx.run())
        await asyncio.sleep(0.01)

        idx.request_stop()
        await asyncio.wait_for(task, timeout=1)

        assert idx.state == IndexerState.STOPPED


class TestFromSettings:
    """Tests for building an indexer from settings."""

    @pytest.fixture(autouse=True)
    def _env(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        monkeypatch.delenv("REDIS_URL", raising=False)

    def test_builds_evm_client_and_seeds_wallets(self) -> None:
        idx = Indexer.from_settings(Settings())

        assert idx.chain == Chain.ETHEREUM
        assert isinstance(idx._chain_reader, EvmChainClient)
        assert idx.refresh_tracked_wallets() == 5

    def test_seeding_can_be_disabled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SEED_DEFAULT_WALLETS", "false")
        idx = Indexer.from_settings(Settings())
        assert idx.refresh_tracked_wallets() == 0

    @pytest.mark.asyncio
    async def test_solana_refuses_to_start(self) -> None:
        idx = Indexer.from_settings(Settings(), chain=Chain.SOLANA)

        with pytest.raises(ConfigurationError):
            await idx.start()
