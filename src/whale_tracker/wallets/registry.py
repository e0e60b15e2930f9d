"""Tracked-wallet registry.

The indexer only ever reads from a registry through :class:`WalletRegistry`.
:class:`InMemoryWalletRegistry` is the process-local implementation used by
the CLI; curation (where wallet lists come from) lives outside this package.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from whale_tracker.models import Chain, Wallet

logger = logging.getLogger(__name__)

DEFAULT_WALLETS: tuple[Wallet, ...] = (
    Wallet(
        address="0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045",
        chain=Chain.ETHEREUM,
        label="Vitalik Buterin",
        source="public",
        tags=("founder", "ethereum"),
    ),
    Wallet(
        address="0x47ac0Fb4F2D84898e4D9E7b4DaB3C24507a6D503",
        chain=Chain.ETHEREUM,
        label="Binance",
        source="arkham",
        tags=("exchange", "cex"),
    ),
    Wallet(
        address="0x742d35Cc6634C0532925a3b844Bc9e7595f1b5E0",
        chain=Chain.ETHEREUM,
        label="Bitfinex",
        source="arkham",
        tags=("exchange", "cex"),
    ),
    Wallet(
        address="0xBE0eB53F46cd790Cd13851d5EFf43D12404d33E8",
        chain=Chain.ETHEREUM,
        label="Binance 7",
        source="arkham",
        tags=("exchange", "cex"),
    ),
    Wallet(
        address="0x8315177aB297bA92A06054cE80a67Ed4DBd7ed3a",
        chain=Chain.ETHEREUM,
        label="Arbitrum Bridge",
        source="public",
        tags=("bridge", "l2"),
    ),
)


class WalletRegistry(Protocol):
    """Read port onto the set of tracked wallets."""

    def get_wallets(self, chain: Chain) -> list[Wallet]: ...


class InMemoryWalletRegistry:
    """Process-local wallet registry keyed by (chain, lowercase address)."""

    def __init__(self, wallets: Iterable[Wallet] = ()) -> None:
        self._wallets: dict[tuple[Chain, str], Wallet] = {}
        for wallet in wallets:
            self.add_wallet(wallet)

    def __len__(self) -> int:
        return len(self._wallets)

    def add_wallet(self, wallet: Wallet) -> None:
        """Add or replace a tracked wallet."""
        if wallet.key in self._wallets:
            logger.debug("Replacing tracked wallet %s on %s", wallet.address, wallet.chain.value)
        self._wallets[wallet.key] = wallet

    def remove_wallet(self, address: str, chain: Chain) -> bool:
        """Remove a wallet. Returns True if it was tracked."""
        return self._wallets.pop((chain, address.lower()), None) is not None

    def get_wallet(self, address: str, chain: Chain) -> Wallet | None:
        return self._wallets.get((chain, address.lower()))

    def is_tracked(self, address: str, chain: Chain) -> bool:
        return (chain, address.lower()) in self._wallets

    def get_wallets(self, chain: Chain) -> list[Wallet]:
        return [w for (c, _), w in self._wallets.items() if c == chain]

    def get_addresses(self, chain: Chain) -> set[str]:
        """Lowercase addresses tracked on ``chain``."""
        return {addr for (c, addr) in self._wallets if c == chain}

    def seed_default_wallets(self) -> int:
        """Add the well-known default wallets.

        Returns:
            Number of wallets that were not already tracked.
        """
        added = 0
        for wallet in DEFAULT_WALLETS:
            if wallet.key not in self._wallets:
                added += 1
            self.add_wallet(wallet)
        logger.info("Seeded %d default wallets", added)
        return added
