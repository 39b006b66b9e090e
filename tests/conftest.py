"""
conftest.py: Shared pytest fixtures for the layr_payments test suite.

- Place fixtures here to make them available across all test subdirectories.
- The chain is always the scripted MockChainClient; retry delays are recorded,
  not slept.

Usage:
    def test_something(manager, chain):
        chain.add_transfer(tx_hash(1), OWNER_WALLET, 100_000_000)
"""

import pytest

from layr_payments import PaymentManager
from layr_payments.chain import MockChainClient
from layr_payments.ledger import PaymentLedger
from layr_payments.models import Project, UserAccount
from layr_payments.storage import DatabaseStorage, MemoryStorage

OWNER_ID = "alice"
OWNER_WALLET = "0x" + "a1" * 32
BUYER_ID = "bob"
BUYER_WALLET = "0x" + "b0" * 32
PROJECT_ID = "repo1"
REPO_ID = 7
DEMO_PRICE = 10_000_000
DOWNLOAD_PRICE = 100_000_000


def tx_hash(n: int) -> str:
    """A well-formed 32-byte transaction hash."""
    return "0x" + format(n, "064x")


class SleepRecorder:
    """Stands in for asyncio.sleep and records the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def seed_catalog(storage):
    storage.save_user(UserAccount(id=OWNER_ID, wallet_address=OWNER_WALLET, display_name="Alice"))
    storage.save_user(UserAccount(id=BUYER_ID, wallet_address=BUYER_WALLET))
    storage.save_project(
        Project(
            id=PROJECT_ID,
            owner_id=OWNER_ID,
            title="Repo One",
            demo_price=DEMO_PRICE,
            download_price=DOWNLOAD_PRICE,
            chain_repo_id=REPO_ID,
        )
    )
    return storage


@pytest.fixture
def storage():
    """An in-memory storage seeded with one owner, one buyer and one project."""
    return seed_catalog(MemoryStorage())


@pytest.fixture
def db_storage(tmp_path):
    """A SQLite storage seeded like ``storage``."""
    return seed_catalog(DatabaseStorage(str(tmp_path / "layr.db")))


@pytest.fixture
def chain():
    return MockChainClient()


@pytest.fixture
def ledger(storage):
    return PaymentLedger(storage)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def manager(storage, chain, sleeper):
    """A PaymentManager over seeded in-memory storage and a connected mock chain."""
    return PaymentManager(storage=storage, chain_client=chain, sleep=sleeper)
