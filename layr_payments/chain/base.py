"""
Abstract base class for chain clients.

A chain client is constructed explicitly, connected once with :meth:`ChainClient.connect`
and then handed to the verification engine and the access query service.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..exceptions import ChainError, ChainNotConnected, ConfigurationError
from ..logging_config import log_performance
from ..models import AccessTier, ChainTransactionView
from ..utils import normalize_address

logger = logging.getLogger(__name__)


@dataclass
class ChainStatus:
    """Represents the last observed status of the chain connection."""

    is_healthy: bool = False
    last_check: Optional[datetime] = None
    error_message: Optional[str] = None
    response_time_ms: Optional[float] = None
    chain_id: Optional[int] = None
    ledger_version: Optional[str] = None

    def __post_init__(self):
        if self.last_check is None:
            self.last_check = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "error_message": self.error_message,
            "response_time_ms": self.response_time_ms,
            "chain_id": self.chain_id,
            "ledger_version": self.ledger_version,
        }


class ChainClient(ABC):
    """
    Abstract base class for chain clients.

    Subclasses implement the raw reads; this class enforces the connection
    state and provides the access registry queries on top of ``view``.
    """

    def __init__(self, name: str, network: str, chain_id: Optional[int] = None, contract_address: Optional[str] = None):
        self.name = name
        self.network = network
        self.chain_id = chain_id
        self.contract_address = normalize_address(contract_address) if contract_address else None
        self.status = ChainStatus()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def ensure_connected(self) -> None:
        """Raise ChainNotConnected unless :meth:`connect` has succeeded."""
        if not self._connected:
            raise ChainNotConnected(
                f"{self.name} is not connected. Call connect() first.",
                network=self.network,
                operation="ensure_connected",
            )

    async def connect(self) -> None:
        """Check the node is reachable and on the expected chain, then mark the client connected."""
        try:
            status = await self.health_check(raise_on_failure=True)
        except (ChainError, ConfigurationError):
            self._connected = False
            raise
        self._connected = True
        logger.info("Connected to %s network via %s (chain id %s)", self.network, self.name, status.chain_id)

    async def close(self) -> None:
        self._connected = False

    async def health_check(self, raise_on_failure: bool = False) -> ChainStatus:
        """Query ledger info and verify the chain id."""
        start_time = time.time()
        try:
            info = await self._get_ledger_info()
            chain_id = int(info.get("chain_id")) if info.get("chain_id") is not None else None
            if self.chain_id is not None and chain_id != self.chain_id:
                raise ConfigurationError(
                    f"Chain ID mismatch: expected {self.chain_id}, got {chain_id}",
                    config_key="ChainId",
                    expected_value=str(self.chain_id),
                    actual_value=str(chain_id),
                )
            self.status = ChainStatus(
                is_healthy=True,
                response_time_ms=(time.time() - start_time) * 1000,
                chain_id=chain_id,
                ledger_version=info.get("ledger_version"),
            )
        except (ChainError, ConfigurationError) as e:
            logger.warning("Health check failed for %s: %s", self.name, e)
            self.status = ChainStatus(
                is_healthy=False,
                error_message=f"Health check failed: {e.message}",
                response_time_ms=(time.time() - start_time) * 1000,
            )
            if raise_on_failure:
                raise
        return self.status

    async def get_transaction(self, tx_hash: str) -> ChainTransactionView:
        """
        Fetch what the chain knows about ``tx_hash``.

        Raises:
            TransactionNotFound: The node has no record of the hash yet.
            ChainUnavailable: The node could not be reached or failed.
            ChainNotConnected: The client was never connected.
        """
        self.ensure_connected()
        start_time = time.time()
        try:
            return await self._get_transaction(tx_hash)
        finally:
            log_performance(f"{self.name}.get_transaction", start_time, time.time(), logger)

    async def view(self, function: str, arguments: List[Any], type_arguments: Optional[List[str]] = None) -> List[Any]:
        """Call a read-only Move view function and return its result values."""
        self.ensure_connected()
        return await self._view(function, [str(a) if isinstance(a, int) else a for a in arguments], type_arguments or [])

    @property
    def supports_access_queries(self) -> bool:
        return self.contract_address is not None

    def _access_function(self, name: str) -> str:
        if not self.contract_address:
            raise ConfigurationError(
                "Contract address is not configured for access queries", config_key="ContractAddress"
            )
        return f"{self.contract_address}::access::{name}"

    async def has_access(self, wallet_address: str, repo_id: int) -> bool:
        """Query ``access::has_access`` in the on-chain access registry."""
        result = await self.view(self._access_function("has_access"), [normalize_address(wallet_address), repo_id])
        return bool(result and result[0])

    async def get_access_type(self, wallet_address: str, repo_id: int) -> Optional[AccessTier]:
        """Query ``access::get_access_type``; 0 means no access, 1 demo, 2 download."""
        result = await self.view(self._access_function("get_access_type"), [normalize_address(wallet_address), repo_id])
        level = int(result[0]) if result else 0
        return AccessTier.from_level(level)

    def get_client_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "network": self.network,
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "connected": self._connected,
            "status": self.status.to_dict(),
        }

    @abstractmethod
    async def _get_ledger_info(self) -> Dict[str, Any]:
        """Return the node's ledger info, at least ``chain_id``."""

    @abstractmethod
    async def _get_transaction(self, tx_hash: str) -> ChainTransactionView:
        """Fetch and parse a transaction by hash."""

    @abstractmethod
    async def _view(self, function: str, arguments: List[Any], type_arguments: List[str]) -> List[Any]:
        """Execute a view function."""
