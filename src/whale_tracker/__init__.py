"""Whale Tracker - on-chain whale movement indexer and event store."""

__version__ = "0.1.0"
