"""Pricing - cached USD prices per asset symbol."""

from whale_tracker.pricing.oracle import (
    STABLECOINS,
    SYMBOL_TO_COINGECKO,
    PriceCacheEntry,
    PriceFetchError,
    PriceOracle,
)

__all__ = [
    "STABLECOINS",
    "SYMBOL_TO_COINGECKO",
    "PriceCacheEntry",
    "PriceFetchError",
    "PriceOracle",
]
