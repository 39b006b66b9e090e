"""
Core classes for the Layr Payments package.

``PaymentManager`` wires the resolver, ledger, verification engine and access
query service over one storage backend and one chain client.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from .access import AccessQueryService
from .chain.base import ChainClient
from .chain.movement import MovementChainClient
from .config import ENVIRONMENT, INTENT_TTL_MINUTES, VERIFY_MAX_ATTEMPTS, VERIFY_RETRY_DELAY, is_storage_enabled
from .exceptions import ConfigurationError, StorageError, ValidationError
from .ledger import IntentPage, PaymentLedger, PurchasePage
from .models import AccessStatus, PaymentIntent, Project, PurchaseGrant, UserAccount
from .resolver import PriceResolver
from .storage import MemoryStorage, StorageBackend
from .utils import is_valid_address, normalize_address, parse_datetime
from .verification import VerificationEngine, VerificationResult

logger = logging.getLogger(__name__)

HISTORY_DIRECTIONS = ("incoming", "outgoing")


def _create_environment_aware_storage() -> StorageBackend:
    """Create a storage backend based on environment and configuration."""
    # In production, prefer persistent storage
    if ENVIRONMENT == "production" and is_storage_enabled("database"):
        try:
            from .storage.database import DatabaseStorage

            logger.info("Initializing DatabaseStorage for production environment")
            return DatabaseStorage()
        except (ConfigurationError, StorageError) as e:
            logger.warning("Failed to initialize DatabaseStorage: %s", e)

    if is_storage_enabled("memory"):
        logger.info("Initializing MemoryStorage (development/testing environment)")
        return MemoryStorage()

    logger.warning("No storage backends available from configuration, using MemoryStorage as fallback")
    return MemoryStorage()


def _require_id(value: Any, field_name: str) -> str:
    if not value or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required and must be a string", field=field_name, value=value)
    return value.strip()


def _require_wallet(value: Any) -> str:
    if not is_valid_address(value):
        raise ValidationError("Invalid wallet address", field="wallet_address", value=value)
    return normalize_address(value)


def _parse_date(value: datetime | str | None, field_name: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"{field_name} must be an ISO 8601 date", field=field_name, value=value)
    return parsed


class PaymentManager:
    """Main entry point for initiating and verifying marketplace payments."""

    def __init__(
        self,
        storage: StorageBackend | None = None,
        chain_client: ChainClient | None = None,
        intent_ttl_minutes: int = INTENT_TTL_MINUTES,
        max_attempts: int = VERIFY_MAX_ATTEMPTS,
        retry_delay: float = VERIFY_RETRY_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the payment manager."""
        if storage is None:
            storage = _create_environment_aware_storage()

        self.storage = storage
        self.chain_client = chain_client or MovementChainClient()
        self.resolver = PriceResolver(self.storage)
        self.ledger = PaymentLedger(self.storage, intent_ttl_minutes=intent_ttl_minutes)
        self.verifier = VerificationEngine(
            self.ledger, self.chain_client, max_attempts=max_attempts, retry_delay=retry_delay, sleep=sleep
        )
        self.access = AccessQueryService(self.storage, self.ledger, self.chain_client)
        logger.info(
            "PaymentManager initialized with chain client: %s, storage: %s",
            self.chain_client.name,
            type(self.storage).__name__,
        )

    async def connect(self) -> None:
        """Connect the chain client. Verification refuses to run until this succeeds."""
        await self.chain_client.connect()

    async def close(self) -> None:
        await self.chain_client.close()

    def register_user(self, user: UserAccount) -> UserAccount:
        """Create or update a marketplace user."""
        if not isinstance(user, UserAccount):
            raise ValidationError("User must be a UserAccount instance", field="user", value=user)
        if self.storage.get_user(user.id):
            logger.info("User %s already exists, updating", user.id)
        self.storage.save_user(user)
        return user

    def register_project(self, project: Project) -> Project:
        """Create or update a listed project."""
        if not isinstance(project, Project):
            raise ValidationError("Project must be a Project instance", field="project", value=project)
        if self.storage.get_project(project.id):
            logger.warning("Project %s already exists, updating", project.id)
        self.storage.save_project(project)
        logger.info("Registered project %s owned by %s", project.id, project.owner_id)
        return project

    def get_project(self, project_id: str) -> Project:
        return self.resolver.get_project(project_id)

    def get_intent(self, payment_id: str) -> PaymentIntent | None:
        return self.ledger.get_intent(payment_id)

    def initiate_payment(self, user_id: str, project_id: str, access_type: str) -> PaymentIntent:
        """
        Issue a payment intent for ``access_type`` on ``project_id``.

        Raises:
            ValidationError: If an argument is missing or the access type is unknown.
            ProjectNotFound: If the project does not exist.
            RecipientWalletMissing: If the project owner cannot be paid.
            DuplicateAccess: If the user already holds the tier.
        """
        user_id = _require_id(user_id, "user_id")
        project_id = _require_id(project_id, "project_id")
        if not access_type:
            raise ValidationError('accessType must be "demo" or "download"', field="access_type", value=access_type)

        quote = self.resolver.resolve(project_id, access_type)
        return self.ledger.create_intent(user_id, quote.project.id, quote.tier, quote.amount, quote.recipient)

    async def verify_payment(
        self, payment_id: str, tx_hash: str, user_id: str, cancel: asyncio.Event | None = None
    ) -> VerificationResult:
        """Verify ``tx_hash`` against the pending intent ``payment_id``."""
        payment_id = _require_id(payment_id, "payment_id")
        user_id = _require_id(user_id, "user_id")
        if not tx_hash:
            raise ValidationError("txHash is required", field="tx_hash", value=tx_hash)
        return await self.verifier.verify(payment_id, tx_hash, user_id, cancel=cancel)

    async def check_access(
        self, project_id: str, user_id: str | None = None, wallet: str | None = None
    ) -> AccessStatus:
        project_id = _require_id(project_id, "project_id")
        return await self.access.check_access(project_id, user_id=user_id, wallet=wallet)

    def get_user_purchases(self, user_id: str, page: int = 1, limit: int = 20) -> PurchasePage:
        user_id = _require_id(user_id, "user_id")
        return self.ledger.list_user_purchases(user_id, page=page, limit=limit)

    def get_transaction_history(
        self,
        user_id: str,
        direction: str | None = None,
        start: datetime | str | None = None,
        end: datetime | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> IntentPage:
        """
        Page through a user's payment history, newest first.

        ``incoming`` lists intents paid to the user's wallet, ``outgoing`` those
        the user paid; by default both are listed with confirmed totals.

        Raises:
            ValidationError: If the direction or a date is malformed, or the user
                has no wallet to receive incoming payments.
        """
        user_id = _require_id(user_id, "user_id")
        if direction is not None and direction not in HISTORY_DIRECTIONS:
            raise ValidationError(
                f'type must be one of: {", ".join(HISTORY_DIRECTIONS)}', field="type", value=direction
            )
        since = _parse_date(start, "startDate")
        until = _parse_date(end, "endDate")
        user = self.storage.get_user(user_id)
        wallet = user.wallet_address if user else None

        if direction == "outgoing":
            return self.ledger.list_intents(payer_id=user_id, since=since, until=until, page=page, limit=limit)
        if direction == "incoming":
            if wallet is None:
                raise ValidationError("User has no wallet address to receive payments", field="user_id", value=user_id)
            return self.ledger.list_intents(recipient=wallet, since=since, until=until, page=page, limit=limit)
        return self.ledger.list_intents(
            payer_id=user_id, recipient=wallet, since=since, until=until, either_party=True, page=page, limit=limit
        )

    def get_wallet_transactions(self, wallet_address: str, page: int = 1, limit: int = 20) -> IntentPage:
        """Payment history of a wallet: intents paid to it and by the user who owns it."""
        wallet = _require_wallet(wallet_address)
        user = self.storage.get_user_by_wallet(wallet)
        return self.ledger.list_intents(
            payer_id=user.id if user else None, recipient=wallet, either_party=True, page=page, limit=limit
        )

    def get_project_transactions(self, project_id: str, page: int = 1, limit: int = 20) -> IntentPage:
        project = self.resolver.get_project(_require_id(project_id, "project_id"))
        return self.ledger.list_intents(project_id=project.id, page=page, limit=limit)

    def get_wallet_access(self, wallet_address: str) -> list[PurchaseGrant]:
        """Confirmed grants held by the user who owns ``wallet_address``."""
        wallet = _require_wallet(wallet_address)
        user = self.storage.get_user_by_wallet(wallet)
        if user is None:
            logger.info("No user registered for wallet %s", wallet)
            return []
        return self.ledger.get_confirmed_grants(user.id)

    async def get_health_status(self) -> dict[str, Any]:
        """Report storage and chain health."""
        storage_status = await asyncio.to_thread(self.storage.check_health)
        chain_status = await self.chain_client.health_check()
        return {
            "healthy": storage_status.is_healthy and chain_status.is_healthy,
            "storage": storage_status.to_dict(),
            "chain": self.chain_client.get_client_info(),
        }
