import asyncio
import json

import httpx
import pytest
from conftest import OWNER_WALLET, tx_hash

from layr_payments.chain import MovementChainClient, parse_transaction
from layr_payments.exceptions import (
    ChainNotConnected,
    ChainRequestRejected,
    ChainUnavailable,
    ConfigurationError,
    TransactionNotFound,
)
from layr_payments.models import AccessTier, ChainTxStatus

CONTRACT = "0x" + "c0" * 32


def transfer_tx(recipient=OWNER_WALLET, amount="100000000", success=True, function="0x1::coin::transfer"):
    return {
        "type": "user_transaction",
        "version": "12345",
        "hash": tx_hash(1),
        "sender": "0x" + "b0" * 32,
        "success": success,
        "vm_status": "Executed successfully" if success else "Move abort in 0x1::coin: EINSUFFICIENT_BALANCE",
        "payload": {
            "type": "entry_function_payload",
            "function": function,
            "type_arguments": ["0x1::aptos_coin::AptosCoin"],
            "arguments": [recipient, amount],
        },
    }


class FakeNode:
    """Routes fullnode REST paths to canned responses and records requests."""

    def __init__(self, chain_id=177):
        self.chain_id = chain_id
        self.transactions = {}
        self.view_result = ["0"]
        self.status_override = None
        self.error = None
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"message": "node says no"})
        path = request.url.path
        if path == "/v1/":
            return httpx.Response(200, json={"chain_id": self.chain_id, "ledger_version": "999"})
        if path.startswith("/v1/transactions/by_hash/"):
            found = self.transactions.get(path.rsplit("/", 1)[-1])
            if found is None:
                return httpx.Response(404, json={"error_code": "transaction_not_found"})
            return httpx.Response(200, json=found)
        if path == "/v1/view":
            return httpx.Response(200, json=self.view_result)
        return httpx.Response(404, json={"message": "unknown route"})


def make_client(node, **kwargs):
    kwargs.setdefault("chain_id", 177)
    kwargs.setdefault("contract_address", CONTRACT)
    return MovementChainClient(rpc_url="http://node/v1", transport=httpx.MockTransport(node), **kwargs)


def connected_client(node, **kwargs):
    client = make_client(node, **kwargs)
    asyncio.run(client.connect())
    return client


def test_parse_coin_transfer():
    view = parse_transaction(tx_hash(1), transfer_tx(recipient=OWNER_WALLET.upper().replace("0X", "0x")))
    assert view.status is ChainTxStatus.CONFIRMED
    assert view.recipient == OWNER_WALLET
    assert view.amount == 100_000_000
    assert view.block_ref == "12345"
    assert view.sender == "0x" + "b0" * 32
    assert view.is_transfer()


def test_parse_aptos_account_transfer():
    view = parse_transaction(tx_hash(1), transfer_tx(function="0x1::aptos_account::transfer"))
    assert view.is_transfer()


def test_parse_failed_transaction():
    view = parse_transaction(tx_hash(1), transfer_tx(success=False))
    assert view.status is ChainTxStatus.FAILED
    assert "Move abort" in view.vm_status


def test_parse_pending_transaction():
    view = parse_transaction(tx_hash(1), {"type": "pending_transaction", "hash": tx_hash(1)})
    assert view.status is ChainTxStatus.PENDING
    assert not view.is_transfer()


def test_parse_non_transfer_payload():
    view = parse_transaction(tx_hash(1), transfer_tx(function="0xcafe::marketplace::list"))
    assert view.status is ChainTxStatus.CONFIRMED
    assert view.recipient is None
    assert view.amount is None


def test_parse_malformed_transfer_arguments():
    view = parse_transaction(tx_hash(1), transfer_tx(amount="lots"))
    assert not view.is_transfer()


def test_connect_checks_chain_id():
    node = FakeNode()
    client = connected_client(node)
    assert client.connected
    assert client.status.is_healthy
    assert client.status.chain_id == 177
    assert client.status.ledger_version == "999"


def test_connect_rejects_wrong_chain():
    client = make_client(FakeNode(chain_id=1))
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(client.connect())
    assert exc.value.details["actual_value"] == "1"
    assert not client.connected


def test_connect_unreachable_node():
    node = FakeNode()
    node.error = httpx.ConnectError("connection refused")
    client = make_client(node)
    with pytest.raises(ChainUnavailable):
        asyncio.run(client.connect())
    assert not client.connected


def test_health_check_without_raise_reports_status():
    node = FakeNode()
    node.status_override = 503
    status = asyncio.run(make_client(node).health_check())
    assert not status.is_healthy
    assert "HTTP 503" in status.error_message


def test_get_transaction_requires_connect():
    with pytest.raises(ChainNotConnected):
        asyncio.run(make_client(FakeNode()).get_transaction(tx_hash(1)))


def test_get_transaction():
    node = FakeNode()
    node.transactions[tx_hash(1)] = transfer_tx()
    client = connected_client(node)
    view = asyncio.run(client.get_transaction(tx_hash(1)))
    assert view.amount == 100_000_000
    assert node.requests[-1].url.path == f"/v1/transactions/by_hash/{tx_hash(1)}"


def test_get_transaction_not_found():
    client = connected_client(FakeNode())
    with pytest.raises(TransactionNotFound) as exc:
        asyncio.run(client.get_transaction(tx_hash(2)))
    assert exc.value.details["tx_hash"] == tx_hash(2)


@pytest.mark.parametrize("status", [429, 500, 502, 503])
def test_get_transaction_node_failure_is_unavailable(status):
    node = FakeNode()
    client = connected_client(node)
    node.status_override = status
    with pytest.raises(ChainUnavailable) as exc:
        asyncio.run(client.get_transaction(tx_hash(1)))
    assert exc.value.details["status_code"] == status


def test_get_transaction_bad_request_is_rejected():
    node = FakeNode()
    client = connected_client(node)
    node.status_override = 400
    with pytest.raises(ChainRequestRejected) as exc:
        asyncio.run(client.get_transaction(tx_hash(1)))
    assert "node says no" in exc.value.message


def test_get_transaction_timeout_is_unavailable():
    node = FakeNode()
    client = connected_client(node)
    node.error = httpx.ReadTimeout("timed out")
    with pytest.raises(ChainUnavailable):
        asyncio.run(client.get_transaction(tx_hash(1)))


def test_view_posts_function_call():
    node = FakeNode()
    node.view_result = ["2"]
    client = connected_client(node)
    assert asyncio.run(client.view("0x1::m::f", [OWNER_WALLET, 7])) == ["2"]
    body = json.loads(node.requests[-1].content)
    assert body == {"function": "0x1::m::f", "type_arguments": [], "arguments": [OWNER_WALLET, "7"]}


def test_view_unexpected_result():
    node = FakeNode()
    node.view_result = {"oops": True}
    client = connected_client(node)
    with pytest.raises(ChainUnavailable):
        asyncio.run(client.view("0x1::m::f", []))


def test_get_access_type():
    node = FakeNode()
    node.view_result = ["2"]
    client = connected_client(node)
    assert asyncio.run(client.get_access_type(OWNER_WALLET, 7)) is AccessTier.DOWNLOAD
    body = json.loads(node.requests[-1].content)
    assert body["function"] == f"{CONTRACT}::access::get_access_type"
    node.view_result = ["0"]
    assert asyncio.run(client.get_access_type(OWNER_WALLET, 7)) is None


def test_has_access():
    node = FakeNode()
    node.view_result = [True]
    client = connected_client(node)
    assert asyncio.run(client.has_access(OWNER_WALLET, 7)) is True


def test_access_queries_need_contract_address():
    client = connected_client(FakeNode(), contract_address=None)
    assert not client.supports_access_queries
    with pytest.raises(ConfigurationError):
        asyncio.run(client.get_access_type(OWNER_WALLET, 7))


def test_close_disconnects():
    client = connected_client(FakeNode())
    asyncio.run(client.close())
    assert not client.connected
    assert client.get_client_info()["connected"] is False
