"""Data models for the chain-access layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class ChainTransaction:
    """A transaction as seen by the indexer.

    ``to_address`` is None for contract creations.
    """

    hash: str
    from_address: str | None
    to_address: str | None
    value: int
    block_number: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "blockNumber": self.block_number,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChainTransaction:
        return cls(
            hash=str(data["hash"]),
            from_address=data.get("from"),
            to_address=data.get("to"),
            value=int(data.get("value") or 0),
            block_number=int(data["blockNumber"]),
        )


@dataclass(frozen=True)
class Block:
    """A block with its full transaction list."""

    number: int
    timestamp: int
    transactions: tuple[ChainTransaction, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "timestamp": self.timestamp,
            "transactions": [tx.to_dict() for tx in self.transactions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Block:
        return cls(
            number=int(data["number"]),
            timestamp=int(data["timestamp"]),
            transactions=tuple(ChainTransaction.from_dict(tx) for tx in data.get("transactions", [])),
        )


class ChainReader(Protocol):
    """Read port onto a chain, as consumed by the indexer."""

    async def get_current_block_height(self) -> int: ...

    async def get_block_with_transactions(self, height: int) -> Block: ...
