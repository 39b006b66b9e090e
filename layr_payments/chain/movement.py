"""
Movement network chain client.

Talks to an Aptos-compatible fullnode REST API with ``httpx``. Only reads are
performed: transaction lookups, ledger info and Move view functions.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import CHAIN_ID, CONTRACT_ADDRESS, RPC_TIMEOUT, RPC_URL
from ..exceptions import ChainRequestRejected, ChainUnavailable, TransactionNotFound
from ..models import ChainTransactionView, ChainTxStatus
from ..utils import normalize_address, parse_amount
from .base import ChainClient

logger = logging.getLogger(__name__)

# Entry functions whose first two arguments are (recipient, amount)
TRANSFER_FUNCTIONS = ("coin::transfer", "aptos_account::transfer")


def parse_transaction(tx_hash: str, data: Dict[str, Any]) -> ChainTransactionView:
    """Build a :class:`ChainTransactionView` from a fullnode transaction JSON object."""
    sender = data.get("sender")
    if sender:
        try:
            sender = normalize_address(sender)
        except ValueError:
            sender = None

    if data.get("type") == "pending_transaction":
        return ChainTransactionView(tx_hash=tx_hash, status=ChainTxStatus.PENDING, sender=sender)

    status = ChainTxStatus.CONFIRMED if data.get("success") is True else ChainTxStatus.FAILED
    version = data.get("version")

    recipient: Optional[str] = None
    amount: Optional[int] = None
    payload = data.get("payload") or {}
    function = payload.get("function") or ""
    if payload.get("type") == "entry_function_payload" and any(name in function for name in TRANSFER_FUNCTIONS):
        args = payload.get("arguments") or []
        if len(args) >= 2:
            try:
                recipient = normalize_address(args[0])
                amount = parse_amount(args[1])
            except ValueError as e:
                logger.warning("Unparseable transfer arguments in %s: %s", tx_hash, e)
                recipient, amount = None, None

    return ChainTransactionView(
        tx_hash=tx_hash,
        status=status,
        sender=sender,
        recipient=recipient,
        amount=amount,
        block_ref=str(version) if version is not None else None,
        vm_status=data.get("vm_status"),
    )


class MovementChainClient(ChainClient):
    """
    Chain client for Movement (Aptos-compatible) fullnodes.

    Pass ``transport`` to route requests through a custom ``httpx`` transport,
    such as ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        rpc_url: str = RPC_URL,
        chain_id: Optional[int] = CHAIN_ID,
        contract_address: Optional[str] = CONTRACT_ADDRESS or None,
        timeout: float = RPC_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        network: str = "movement",
    ):
        super().__init__("MovementChainClient", network, chain_id=chain_id, contract_address=contract_address)
        self.rpc_url = rpc_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.rpc_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        logger.info("MovementChainClient configured for %s (chain id %s)", self.rpc_url, chain_id)

    async def close(self) -> None:
        await super().close()
        await self._client.aclose()

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ChainUnavailable(
                f"Request to {self.network} timed out: {e}", network=self.network, operation=operation
            )
        except httpx.HTTPError as e:
            raise ChainUnavailable(f"Request to {self.network} failed: {e}", network=self.network, operation=operation)

        if response.status_code == 429 or response.status_code >= 500:
            raise ChainUnavailable(
                f"{self.network} node returned HTTP {response.status_code}",
                network=self.network,
                operation=operation,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str, network: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ChainUnavailable(f"Malformed response from {network}: {e}", network=network, operation=operation)

    def _reject(self, response: httpx.Response, operation: str) -> ChainRequestRejected:
        try:
            body = response.json()
            detail = (body.get("message") or body.get("error_code")) if isinstance(body, dict) else None
            detail = detail or response.text
        except ValueError:
            detail = response.text
        return ChainRequestRejected(
            f"{self.network} rejected {operation}: {detail}",
            network=self.network,
            operation=operation,
            status_code=response.status_code,
        )

    async def _get_ledger_info(self) -> Dict[str, Any]:
        response = await self._request("GET", "/", "get_ledger_info")
        if response.status_code != 200:
            raise self._reject(response, "get_ledger_info")
        return self._json(response, "get_ledger_info", self.network)

    async def _get_transaction(self, tx_hash: str) -> ChainTransactionView:
        response = await self._request("GET", f"/transactions/by_hash/{tx_hash}", "get_transaction")
        if response.status_code == 404:
            raise TransactionNotFound(
                f"Transaction {tx_hash} not found", network=self.network, operation="get_transaction", tx_hash=tx_hash
            )
        if response.status_code != 200:
            raise self._reject(response, "get_transaction")
        data = self._json(response, "get_transaction", self.network)
        view = parse_transaction(tx_hash, data)
        logger.debug(
            "Transaction %s: status=%s version=%s vm_status=%s",
            tx_hash,
            view.status.value,
            view.block_ref,
            view.vm_status,
        )
        return view

    async def _view(self, function: str, arguments: List[Any], type_arguments: List[str]) -> List[Any]:
        response = await self._request(
            "POST",
            "/view",
            "view",
            json={"function": function, "type_arguments": type_arguments, "arguments": arguments},
        )
        if response.status_code != 200:
            raise self._reject(response, f"view {function}")
        result = self._json(response, "view", self.network)
        if not isinstance(result, list):
            raise ChainUnavailable(
                f"Unexpected view result from {self.network}: {result!r}", network=self.network, operation="view"
            )
        return result
