"""Domain models for wallets, transfers and whale events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Chain(str, Enum):
    """Supported chains."""

    ETHEREUM = "ethereum"
    SOLANA = "solana"
    BASE = "base"


class EventType(str, Enum):
    """Direction of a whale event relative to the tracked wallet."""

    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    SWAP = "swap"


class Significance(str, Enum):
    """Ordinal classification of a transfer's USD value."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Return the ordinal rank (low=1, medium=2, high=3)."""
        return _SIGNIFICANCE_RANK[self]


_SIGNIFICANCE_RANK = {
    Significance.LOW: 1,
    Significance.MEDIUM: 2,
    Significance.HIGH: 3,
}


@dataclass(frozen=True)
class NativeAsset:
    """A chain's base unit of value."""

    symbol: str
    decimals: int


NATIVE_ASSETS: dict[Chain, NativeAsset] = {
    Chain.ETHEREUM: NativeAsset(symbol="ETH", decimals=18),
    Chain.BASE: NativeAsset(symbol="ETH", decimals=18),
    Chain.SOLANA: NativeAsset(symbol="SOL", decimals=9),
}


@dataclass(frozen=True)
class Thresholds:
    """USD thresholds for significance classification.

    ``low`` doubles as the minimum value for a transfer to become an event.
    """

    high: float = 1_000_000.0
    medium: float = 100_000.0
    low: float = 10_000.0

    def __post_init__(self) -> None:
        if not (0 <= self.low <= self.medium <= self.high):
            raise ValueError(
                f"thresholds must satisfy 0 <= low <= medium <= high "
                f"(got low={self.low}, medium={self.medium}, high={self.high})"
            )


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True)
class Wallet:
    """A tracked wallet, scoped to one chain."""

    address: str
    chain: Chain
    label: str | None = None
    source: str | None = None
    tags: tuple[str, ...] = ()
    added_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[Chain, str]:
        """Uniqueness key: (chain, lowercase address)."""
        return (self.chain, self.address.lower())

    @property
    def display_name(self) -> str:
        return self.label or self.address


@dataclass(frozen=True)
class Transfer:
    """Immutable snapshot of one on-chain value movement.

    Attributes:
        hash: Transaction hash.
        chain: Chain the transfer happened on.
        from_address: Sender as reported by the chain.
        to_address: Recipient as reported by the chain (empty for contract creation).
        value: Raw amount in native units (wei, lamports, ...) as a decimal string.
        value_usd: USD value at processing time.
        token: Token address, or ``"native"``.
        token_symbol: Token symbol, e.g. ``"ETH"``.
        block_number: Block height containing the transfer.
        timestamp: Block timestamp (unix seconds).
    """

    hash: str
    chain: Chain
    from_address: str
    to_address: str
    value: str
    value_usd: float
    token: str
    block_number: int
    timestamp: int
    token_symbol: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "chain": self.chain.value,
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "valueUsd": self.value_usd,
            "token": self.token,
            "tokenSymbol": self.token_symbol,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transfer:
        """Create a Transfer from its serialized form."""
        symbol = data.get("tokenSymbol")
        return cls(
            hash=str(data["hash"]),
            chain=Chain(data["chain"]),
            from_address=str(data.get("from") or ""),
            to_address=str(data.get("to") or ""),
            value=str(data["value"]),
            value_usd=float(data["valueUsd"]),
            token=str(data.get("token", "native")),
            token_symbol=str(symbol) if symbol is not None else None,
            block_number=int(data["blockNumber"]),
            timestamp=int(data["timestamp"]),
        )


@dataclass(frozen=True)
class WhaleEvent:
    """Normalized, persisted record of one tracked wallet's side of a transfer.

    Attributes:
        id: Deterministic id derived from (chain, transfer hash, wallet).
        type: Direction relative to ``wallet``.
        wallet: Tracked wallet address (lowercase).
        chain: Chain of the transfer.
        transfer: The transfer this event references.
        significance: Classification of ``transfer.value_usd``.
        created_at: Processing time in epoch milliseconds.
        wallet_label: Optional human-readable wallet label.
    """

    id: str
    type: EventType
    wallet: str
    chain: Chain
    transfer: Transfer
    significance: Significance
    created_at: int
    wallet_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "wallet": self.wallet,
            "walletLabel": self.wallet_label,
            "chain": self.chain.value,
            "transfer": self.transfer.to_dict(),
            "significance": self.significance.value,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class EventPage:
    """One page of query results plus the continuation cursor, if any."""

    events: list[WhaleEvent]
    next_cursor: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    @property
    def count(self) -> int:
        return len(self.events)


@dataclass(frozen=True)
class EventStats:
    """Significance tally over the most recent events."""

    sample_size: int
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.high + self.medium + self.low

    def to_dict(self) -> dict[str, int]:
        return {
            "recentEvents": self.total,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
        }
