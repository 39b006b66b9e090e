from .base import ChainClient, ChainStatus
from .mock import MockChainClient
from .movement import MovementChainClient, parse_transaction

__all__ = ["ChainClient", "ChainStatus", "MockChainClient", "MovementChainClient", "parse_transaction"]
