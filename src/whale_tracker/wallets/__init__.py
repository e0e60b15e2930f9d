"""Wallets - tracked-wallet registry."""

from whale_tracker.wallets.registry import (
    DEFAULT_WALLETS,
    InMemoryWalletRegistry,
    WalletRegistry,
)

__all__ = [
    "DEFAULT_WALLETS",
    "InMemoryWalletRegistry",
    "WalletRegistry",
]
