import asyncio

import pytest
from conftest import BUYER_ID, BUYER_WALLET, OWNER_ID, OWNER_WALLET, PROJECT_ID, REPO_ID, tx_hash

from layr_payments.access import AccessQueryService
from layr_payments.chain import MockChainClient
from layr_payments.exceptions import ChainUnavailable, ProjectNotFound, ValidationError
from layr_payments.models import AccessTier, IntentStatus, Project


@pytest.fixture
def service(storage, ledger, chain):
    return AccessQueryService(storage, ledger, chain)


def grant(ledger, tier="download", n=1):
    intent = ledger.create_intent(BUYER_ID, PROJECT_ID, tier, 1, OWNER_WALLET)
    ledger.finalize_intent(intent.id, IntentStatus.CONFIRMED, tx_hash(n))


def check(service, project_id=PROJECT_ID, user_id=None, wallet=None):
    return asyncio.run(service.check_access(project_id, user_id=user_id, wallet=wallet))


def test_owner_by_user_id(service, chain):
    status = check(service, user_id=OWNER_ID)
    assert status.is_owner
    assert status.has_demo and status.has_download
    assert status.source == "owner"
    assert chain.view_calls == []


def test_owner_by_wallet(service):
    status = check(service, wallet=OWNER_WALLET.upper().replace("0X", "0x"))
    assert status.is_owner
    assert status.to_dict()["accessType"] == 2


def test_owner_by_listing_wallet(storage, service):
    storage.save_project(Project(id="listed", owner_id="carol", owner_wallet="0x" + "c3" * 32))
    assert check(service, "listed", wallet="0x" + "c3" * 32).is_owner


def test_no_access(service):
    status = check(service, user_id=BUYER_ID)
    assert not status.has_access
    assert status.source == "none"
    assert status.to_dict()["accessType"] == 0


def test_download_grant_implies_demo(service, ledger):
    grant(ledger, "download")
    status = check(service, user_id=BUYER_ID)
    assert status.has_download and status.has_demo
    assert status.source == "ledger"
    assert status.granted_at is not None


def test_demo_grant_only(service, ledger):
    grant(ledger, "demo")
    status = check(service, user_id=BUYER_ID)
    assert status.has_demo
    assert not status.has_download
    assert status.highest_tier is AccessTier.DEMO


def test_wallet_resolves_payer(service, ledger, chain):
    grant(ledger, "demo")
    chain.set_access_level(BUYER_WALLET, REPO_ID, AccessTier.DEMO)
    status = check(service, wallet=BUYER_WALLET)
    assert status.has_demo
    assert status.onchain_tier is AccessTier.DEMO
    assert not status.discrepancy
    assert not status.fallback


def test_unknown_wallet_has_no_access(service):
    status = check(service, wallet="0x" + "dd" * 32)
    assert not status.has_access
    assert not status.discrepancy


def test_onchain_disagreement_is_flagged_not_trusted(service, ledger, chain, caplog):
    grant(ledger, "demo")
    chain.set_access_level(BUYER_WALLET, REPO_ID, AccessTier.DOWNLOAD)
    status = check(service, user_id=BUYER_ID, wallet=BUYER_WALLET)
    assert status.discrepancy
    assert status.onchain_tier is AccessTier.DOWNLOAD
    assert not status.has_download
    assert "Access mismatch" in caplog.text


def test_onchain_grant_without_ledger_does_not_grant(service, chain):
    chain.set_access_level(BUYER_WALLET, REPO_ID, AccessTier.DOWNLOAD)
    status = check(service, wallet=BUYER_WALLET)
    assert not status.has_access
    assert status.discrepancy


def test_chain_failure_falls_back_to_ledger(service, ledger, chain):
    grant(ledger, "download")
    chain.fail_views(ChainUnavailable("down", network="mock", operation="view"))
    status = check(service, wallet=BUYER_WALLET)
    assert status.has_download
    assert status.fallback
    assert status.onchain_tier is None


def test_disconnected_chain_falls_back(storage, ledger):
    service = AccessQueryService(storage, ledger, MockChainClient(connected=False))
    status = check(service, wallet=BUYER_WALLET)
    assert status.fallback


def test_no_chain_lookup_without_wallet(service, ledger, chain):
    grant(ledger)
    check(service, user_id=BUYER_ID)
    assert chain.view_calls == []


def test_no_chain_lookup_without_repo_id(storage, service, chain):
    storage.save_project(Project(id="offchain", owner_id=OWNER_ID))
    status = check(service, "offchain", wallet=BUYER_WALLET)
    assert chain.view_calls == []
    assert not status.fallback


def test_no_chain_client(storage, ledger):
    status = check(AccessQueryService(storage, ledger), wallet=BUYER_WALLET)
    assert not status.fallback
    assert status.onchain_tier is None


def test_requires_identity(service):
    with pytest.raises(ValidationError):
        check(service)


def test_rejects_bad_wallet(service):
    with pytest.raises(ValidationError):
        check(service, wallet="wallet-of-bob")


def test_unknown_project(service):
    with pytest.raises(ProjectNotFound):
        check(service, "missing", user_id=BUYER_ID)
