"""
Mock chain client for development and testing.

Responses are scripted per transaction hash. Each call to ``get_transaction``
consumes the next scripted response; the last one repeats once the script is
exhausted. A scripted exception is raised instead of returned.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from ..exceptions import ChainRequestRejected, TransactionNotFound
from ..models import AccessTier, ChainTransactionView, ChainTxStatus
from ..utils import normalize_address
from .base import ChainClient

logger = logging.getLogger(__name__)

ScriptedResponse = Union[ChainTransactionView, Exception]


class MockChainClient(ChainClient):
    """
    Mock chain client for development and testing.

    Not for production use: it never talks to a node.
    """

    def __init__(
        self,
        chain_id: int = 177,
        contract_address: Optional[str] = "0xcafe",
        connected: bool = True,
        network: str = "mock",
    ):
        super().__init__("MockChainClient", network, chain_id=chain_id, contract_address=contract_address)
        self._scripts: Dict[str, List[ScriptedResponse]] = {}
        self._access_levels: Dict[tuple, int] = {}
        self._view_errors: List[Exception] = []
        self.calls: List[str] = []
        self.view_calls: List[tuple] = []
        self.ledger_error: Optional[Exception] = None
        self._connected = connected
        logger.warning("MockChainClient in use. Transactions are scripted, not read from a chain.")

    def script(self, tx_hash: str, *responses: ScriptedResponse) -> None:
        """Queue responses for ``tx_hash``; the last one repeats."""
        if not responses:
            raise ValueError("At least one scripted response is required")
        self._scripts[tx_hash] = list(responses)

    def add_transfer(
        self,
        tx_hash: str,
        recipient: str,
        amount: int,
        status: ChainTxStatus = ChainTxStatus.CONFIRMED,
        sender: Optional[str] = None,
        block_ref: str = "1",
    ) -> ChainTransactionView:
        """Script a settled coin transfer for ``tx_hash``."""
        view = ChainTransactionView(
            tx_hash=tx_hash,
            status=status,
            sender=sender,
            recipient=normalize_address(recipient),
            amount=amount,
            block_ref=block_ref,
            vm_status="Executed successfully" if status is ChainTxStatus.CONFIRMED else "Move abort",
        )
        self.script(tx_hash, view)
        return view

    @staticmethod
    def pending(tx_hash: str) -> ChainTransactionView:
        return ChainTransactionView(tx_hash=tx_hash, status=ChainTxStatus.PENDING)

    def set_access_level(self, wallet_address: str, repo_id: int, tier: Optional[AccessTier]) -> None:
        self._access_levels[(normalize_address(wallet_address), int(repo_id))] = tier.level if tier else 0

    def fail_views(self, error: Exception) -> None:
        """Make every subsequent view call raise ``error``."""
        self._view_errors = [error]

    async def _get_ledger_info(self) -> Dict[str, Any]:
        if self.ledger_error is not None:
            raise self.ledger_error
        return {"chain_id": self.chain_id, "ledger_version": str(len(self.calls))}

    async def _get_transaction(self, tx_hash: str) -> ChainTransactionView:
        self.calls.append(tx_hash)
        script = self._scripts.get(tx_hash)
        if not script:
            raise TransactionNotFound(
                f"Transaction {tx_hash} not found", network=self.network, operation="get_transaction", tx_hash=tx_hash
            )
        response = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def _view(self, function: str, arguments: List[Any], type_arguments: List[str]) -> List[Any]:
        self.view_calls.append((function, tuple(arguments)))
        if self._view_errors:
            raise self._view_errors[0]
        if function.endswith("::access::get_access_type"):
            return [str(self._access_levels.get((arguments[0], int(arguments[1])), 0))]
        if function.endswith("::access::has_access"):
            return [self._access_levels.get((arguments[0], int(arguments[1])), 0) > 0]
        raise ChainRequestRejected(
            f"Unknown view function {function}", network=self.network, operation="view", status_code=400
        )
