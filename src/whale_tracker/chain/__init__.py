"""Chain access - block polling against EVM RPC endpoints."""

from whale_tracker.chain.client import (
    ChainClientError,
    EvmChainClient,
    MalformedBlockError,
    RPCError,
    block_from_rpc,
)
from whale_tracker.chain.models import Block, ChainReader, ChainTransaction

__all__ = [
    "Block",
    "ChainClientError",
    "ChainReader",
    "ChainTransaction",
    "EvmChainClient",
    "MalformedBlockError",
    "RPCError",
    "block_from_rpc",
]
