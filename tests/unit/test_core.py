import asyncio

import pytest
from conftest import BUYER_ID, BUYER_WALLET, DEMO_PRICE, DOWNLOAD_PRICE, OWNER_ID, OWNER_WALLET, PROJECT_ID, tx_hash

from layr_payments import MemoryStorage, MockChainClient, PaymentManager
from layr_payments.chain import MovementChainClient
from layr_payments.exceptions import (
    ChainNotConnected,
    ConfigurationError,
    DuplicateAccess,
    ProjectNotFound,
    RecipientWalletMissing,
    ValidationError,
)
from layr_payments.models import AccessTier, IntentStatus, Project, UserAccount
from layr_payments.verification import VerificationOutcome


def test_payment_manager_initialization(storage, chain):
    pm = PaymentManager(storage=storage, chain_client=chain)
    assert pm.storage is storage
    assert pm.chain_client is chain
    assert pm.verifier.max_attempts == 3
    assert pm.verifier.retry_delay == 2.0


def test_default_chain_client_is_movement():
    pm = PaymentManager(storage=MemoryStorage())
    assert isinstance(pm.chain_client, MovementChainClient)
    assert not pm.chain_client.connected


def test_register_user_and_project():
    pm = PaymentManager(storage=MemoryStorage(), chain_client=MockChainClient())
    pm.register_user(UserAccount(id="dave", wallet_address="0xd4"))
    pm.register_project(Project(id="tool", owner_id="dave", demo_price=5, download_price=50))
    assert pm.get_project("tool").download_price == 50
    with pytest.raises(ValidationError):
        pm.register_user({"id": "dave"})
    with pytest.raises(ValidationError):
        pm.register_project("tool")


def test_initiate_payment(manager):
    intent = manager.initiate_payment(BUYER_ID, PROJECT_ID, "demo")
    assert intent.amount == DEMO_PRICE
    assert intent.recipient == OWNER_WALLET
    assert intent.tier is AccessTier.DEMO
    assert intent.currency == "MOVE"
    assert manager.get_intent(intent.id).id == intent.id


def test_initiate_payment_is_idempotent_while_live(manager):
    first = manager.initiate_payment(BUYER_ID, PROJECT_ID, "download")
    assert manager.initiate_payment(BUYER_ID, PROJECT_ID, "Download").id == first.id


@pytest.mark.parametrize(
    "user_id,project_id,access_type",
    [("", PROJECT_ID, "demo"), (BUYER_ID, "", "demo"), (BUYER_ID, PROJECT_ID, ""), (BUYER_ID, PROJECT_ID, "full")],
)
def test_initiate_payment_validation(manager, user_id, project_id, access_type):
    with pytest.raises(ValidationError):
        manager.initiate_payment(user_id, project_id, access_type)


def test_initiate_payment_unknown_project(manager):
    with pytest.raises(ProjectNotFound):
        manager.initiate_payment(BUYER_ID, "missing", "demo")


def test_initiate_payment_owner_without_wallet(manager):
    manager.register_user(UserAccount(id="erin"))
    manager.register_project(Project(id="nowallet", owner_id="erin", demo_price=1))
    with pytest.raises(RecipientWalletMissing):
        manager.initiate_payment(BUYER_ID, "nowallet", "demo")


def test_full_purchase(manager, chain):
    intent = manager.initiate_payment(BUYER_ID, PROJECT_ID, "download")
    chain.add_transfer(tx_hash(1), OWNER_WALLET, DOWNLOAD_PRICE)

    result = asyncio.run(manager.verify_payment(intent.id, tx_hash(1), BUYER_ID))

    assert result.outcome is VerificationOutcome.CONFIRMED
    assert manager.get_intent(intent.id).status is IntentStatus.CONFIRMED
    access = asyncio.run(manager.check_access(PROJECT_ID, user_id=BUYER_ID))
    assert access.has_download and access.has_demo
    with pytest.raises(DuplicateAccess):
        manager.initiate_payment(BUYER_ID, PROJECT_ID, "demo")
    page = manager.get_user_purchases(BUYER_ID)
    assert page.total == 1
    assert page.purchases[0].tx_hash == tx_hash(1)


def test_verify_payment_requires_arguments(manager):
    with pytest.raises(ValidationError):
        asyncio.run(manager.verify_payment("", tx_hash(1), BUYER_ID))
    with pytest.raises(ValidationError):
        asyncio.run(manager.verify_payment("pay_1", "", BUYER_ID))
    with pytest.raises(ValidationError):
        asyncio.run(manager.verify_payment("pay_1", tx_hash(1), None))


def test_verify_before_connect(storage, sleeper):
    pm = PaymentManager(storage=storage, chain_client=MockChainClient(connected=False), sleep=sleeper)
    intent = pm.initiate_payment(BUYER_ID, PROJECT_ID, "demo")
    with pytest.raises(ChainNotConnected):
        asyncio.run(pm.verify_payment(intent.id, tx_hash(1), BUYER_ID))


def test_connect_and_close(storage):
    chain = MockChainClient(connected=False)
    pm = PaymentManager(storage=storage, chain_client=chain)
    asyncio.run(pm.connect())
    assert chain.connected
    asyncio.run(pm.close())
    assert not chain.connected


def test_connect_wrong_chain(storage):
    chain = MockChainClient(connected=False)
    chain.ledger_error = ConfigurationError("Chain ID mismatch", config_key="ChainId")
    pm = PaymentManager(storage=storage, chain_client=chain)
    with pytest.raises(ConfigurationError):
        asyncio.run(pm.connect())
    assert not chain.connected


def test_owner_check_access(manager):
    status = asyncio.run(manager.check_access(PROJECT_ID, user_id=OWNER_ID))
    assert status.is_owner


def test_check_access_requires_project(manager):
    with pytest.raises(ValidationError):
        asyncio.run(manager.check_access("", user_id=BUYER_ID))


def test_get_user_purchases_validation(manager):
    with pytest.raises(ValidationError):
        manager.get_user_purchases("")
    with pytest.raises(ValidationError):
        manager.get_user_purchases(BUYER_ID, limit=1000)


def test_health_status(manager):
    health = asyncio.run(manager.get_health_status())
    assert health["healthy"] is True
    assert health["storage"]["is_healthy"] is True
    assert health["chain"]["name"] == "MockChainClient"


def test_health_status_chain_down(manager, chain):
    chain.ledger_error = ConfigurationError("Chain ID mismatch", config_key="ChainId")
    health = asyncio.run(manager.get_health_status())
    assert health["healthy"] is False
    assert health["chain"]["status"]["is_healthy"] is False


def buy_download(manager, chain):
    intent = manager.initiate_payment(BUYER_ID, PROJECT_ID, "download")
    chain.add_transfer(tx_hash(1), OWNER_WALLET, DOWNLOAD_PRICE)
    asyncio.run(manager.verify_payment(intent.id, tx_hash(1), BUYER_ID))
    return intent


def test_transaction_history_both_directions(manager, chain):
    sold = buy_download(manager, chain)
    manager.register_project(Project(id="bobtool", owner_id=BUYER_ID, demo_price=5, download_price=50))
    bought = manager.initiate_payment(OWNER_ID, "bobtool", "demo")

    seller = manager.get_transaction_history(OWNER_ID)
    assert seller.total == 2
    assert {seller.direction(i) for i in seller.intents} == {"incoming", "outgoing"}
    assert seller.summary == {"totalIncoming": DOWNLOAD_PRICE, "totalOutgoing": 0}

    incoming = manager.get_transaction_history(OWNER_ID, direction="incoming")
    assert [i.id for i in incoming.intents] == [sold.id]
    outgoing = manager.get_transaction_history(OWNER_ID, direction="outgoing")
    assert [i.id for i in outgoing.intents] == [bought.id]
    assert outgoing.summary is None


def test_transaction_history_date_filters(manager, chain):
    buy_download(manager, chain)
    assert manager.get_transaction_history(BUYER_ID, start="2000-01-01", end="2999-01-01T00:00:00Z").total == 1
    assert manager.get_transaction_history(BUYER_ID, end="2000-01-01").total == 0
    with pytest.raises(ValidationError) as exc:
        manager.get_transaction_history(BUYER_ID, start="last tuesday")
    assert exc.value.details["field"] == "startDate"


def test_transaction_history_validation(manager):
    with pytest.raises(ValidationError):
        manager.get_transaction_history(BUYER_ID, direction="sideways")
    with pytest.raises(ValidationError):
        manager.get_transaction_history("")
    manager.register_user(UserAccount(id="nowallet"))
    with pytest.raises(ValidationError):
        manager.get_transaction_history("nowallet", direction="incoming")
    assert manager.get_transaction_history("nowallet").total == 0


def test_wallet_and_project_transactions(manager, chain):
    intent = buy_download(manager, chain)
    by_wallet = manager.get_wallet_transactions(OWNER_WALLET.upper().replace("0X", "0x"))
    assert [i.id for i in by_wallet.intents] == [intent.id]
    assert by_wallet.direction(intent) == "incoming"
    assert [i.id for i in manager.get_project_transactions(PROJECT_ID).intents] == [intent.id]
    with pytest.raises(ProjectNotFound):
        manager.get_project_transactions("nope")
    with pytest.raises(ValidationError):
        manager.get_wallet_transactions("not-a-wallet")


def test_wallet_access(manager, chain):
    buy_download(manager, chain)
    grants = manager.get_wallet_access(BUYER_WALLET)
    assert [(g.project_id, g.tier) for g in grants] == [(PROJECT_ID, AccessTier.DOWNLOAD)]
    assert manager.get_wallet_access("0x" + "99" * 32) == []
    with pytest.raises(ValidationError):
        manager.get_wallet_access("zzz")
