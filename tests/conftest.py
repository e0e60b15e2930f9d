"""Pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from whale_tracker.config import clear_settings_cache
from whale_tracker.models import Chain, Transfer, Wallet
from whale_tracker.storage.store import EventStore

WHALE_A = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
WHALE_B = "0x47ac0Fb4F2D84898e4D9E7b4DaB3C24507a6D503"
STRANGER = "0x1234567890abcdef1234567890abcdef12345678"

ONE_ETH_WEI = 10**18


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def whale_a() -> Wallet:
    return Wallet(address=WHALE_A, chain=Chain.ETHEREUM, label="Whale A")


@pytest.fixture
def whale_b() -> Wallet:
    return Wallet(address=WHALE_B, chain=Chain.ETHEREUM, label="Whale B")


@pytest.fixture
def sample_transfer() -> Transfer:
    """A 100 ETH transfer from whale A to a stranger, priced at $2,000."""
    return Transfer(
        hash="0x" + "a" * 64,
        chain=Chain.ETHEREUM,
        from_address=WHALE_A,
        to_address=STRANGER,
        value=str(100 * ONE_ETH_WEI),
        value_usd=200_000.0,
        token="native",
        token_symbol="ETH",
        block_number=19_000_000,
        timestamp=1_700_000_000,
    )


@pytest.fixture
async def event_store():
    """In-memory event store with the schema created."""
    store = EventStore.from_url("sqlite+aiosqlite:///:memory:")
    await store.init_schema()
    yield store
    await store.close()
