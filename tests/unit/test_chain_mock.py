import asyncio

import pytest
from conftest import OWNER_WALLET, tx_hash

from layr_payments.chain import MockChainClient
from layr_payments.exceptions import ChainRequestRejected, ChainUnavailable, TransactionNotFound
from layr_payments.models import AccessTier, ChainTxStatus


def test_unscripted_hash_is_not_found(chain):
    with pytest.raises(TransactionNotFound):
        asyncio.run(chain.get_transaction(tx_hash(1)))
    assert chain.calls == [tx_hash(1)]


def test_script_consumes_then_repeats_last(chain):
    error = ChainUnavailable("down", network="mock", operation="get_transaction")
    chain.script(tx_hash(1), error, chain.pending(tx_hash(1)))

    with pytest.raises(ChainUnavailable):
        asyncio.run(chain.get_transaction(tx_hash(1)))
    for _ in range(2):
        assert asyncio.run(chain.get_transaction(tx_hash(1))).status is ChainTxStatus.PENDING


def test_script_requires_a_response(chain):
    with pytest.raises(ValueError):
        chain.script(tx_hash(1))


def test_add_transfer(chain):
    view = chain.add_transfer(tx_hash(1), OWNER_WALLET.upper().replace("0X", "0x"), 5, status=ChainTxStatus.FAILED)
    assert view.recipient == OWNER_WALLET
    assert view.vm_status == "Move abort"
    assert asyncio.run(chain.get_transaction(tx_hash(1))) is view


def test_access_levels(chain):
    chain.set_access_level(OWNER_WALLET, 7, AccessTier.DEMO)
    assert asyncio.run(chain.get_access_type(OWNER_WALLET, 7)) is AccessTier.DEMO
    assert asyncio.run(chain.has_access(OWNER_WALLET, 7)) is True
    assert asyncio.run(chain.get_access_type(OWNER_WALLET, 8)) is None
    chain.set_access_level(OWNER_WALLET, 7, None)
    assert asyncio.run(chain.has_access(OWNER_WALLET, 7)) is False
    assert chain.view_calls[0][0] == "0xcafe::access::get_access_type"


def test_unknown_view_function_rejected(chain):
    with pytest.raises(ChainRequestRejected):
        asyncio.run(chain.view("0xcafe::market::list", []))


def test_mock_connect_reports_chain_id():
    chain = MockChainClient(connected=False)
    asyncio.run(chain.connect())
    assert chain.connected
    assert chain.status.chain_id == 177
