"""
Abstract base class for ledger storage backends.

Defines the interface that all storage backends must implement. Every backend
must make ``finalize_intent`` atomic: the intent status change and the grant
insert either both happen or neither does.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..models import AccessTier, IntentStatus, PaymentIntent, Project, PurchaseGrant, UserAccount

logger = logging.getLogger(__name__)


@dataclass
class StorageCapabilities:
    """Represents the capabilities of a storage backend."""

    supports_transactions: bool = False
    supports_persistence: bool = False
    supports_concurrent_access: bool = True
    supports_pagination: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supports_transactions": self.supports_transactions,
            "supports_persistence": self.supports_persistence,
            "supports_concurrent_access": self.supports_concurrent_access,
            "supports_pagination": self.supports_pagination,
        }


@dataclass
class StorageStatus:
    """Represents the current status of a storage backend."""

    is_healthy: bool = True
    last_check: Optional[datetime] = None
    error_message: Optional[str] = None
    response_time_ms: Optional[float] = None

    def __post_init__(self):
        if self.last_check is None:
            self.last_check = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "error_message": self.error_message,
            "response_time_ms": self.response_time_ms,
        }


class StorageBackend(ABC):
    """
    Abstract base class for ledger storage backends.

    Implementations hold the marketplace catalog (projects, users) read by the
    price resolver and the payment ledger (intents, grants).
    """

    def __init__(self, name: str):
        self.name = name
        self.capabilities = self._get_capabilities()
        self.status = StorageStatus()
        self._validate_configuration()
        logger.info("Initialized storage backend: %s", self.name)

    @abstractmethod
    def _get_capabilities(self) -> StorageCapabilities:
        """Get the capabilities of this storage backend."""

    @abstractmethod
    def _validate_configuration(self) -> None:
        """Validate the storage backend configuration."""

    @abstractmethod
    def _perform_health_check(self) -> None:
        """Return None when healthy, raise when not."""

    # Catalog

    @abstractmethod
    def save_project(self, project: Project) -> None:
        """Insert or replace a project."""

    @abstractmethod
    def get_project(self, project_id: str) -> Optional[Project]:
        """Retrieve a project by ID."""

    @abstractmethod
    def save_user(self, user: UserAccount) -> None:
        """Insert or replace a user account."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        """Retrieve a user by ID."""

    @abstractmethod
    def get_user_by_wallet(self, wallet_address: str) -> Optional[UserAccount]:
        """Retrieve the user owning a normalized wallet address."""

    # Ledger

    @abstractmethod
    def save_intent(self, intent: PaymentIntent) -> None:
        """Insert a new payment intent. Existing ids are a StorageError."""

    @abstractmethod
    def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        """Retrieve an intent by ID regardless of status."""

    @abstractmethod
    def find_open_intent(self, payer_id: str, project_id: str, tier: AccessTier) -> Optional[PaymentIntent]:
        """Return the newest pending intent for the key, expired or not."""

    @abstractmethod
    def list_intents(
        self,
        payer_id: Optional[str] = None,
        recipient: Optional[str] = None,
        project_id: Optional[str] = None,
        status: Optional[IntentStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        either_party: bool = False,
    ) -> List[PaymentIntent]:
        """
        List intents matching every given filter, newest first.

        ``since`` and ``until`` bound ``created_at`` inclusively. With
        ``either_party`` an intent matches when it has ``payer_id`` or
        ``recipient`` instead of both.
        """

    @abstractmethod
    def finalize_intent(self, intent: PaymentIntent, grant: Optional[PurchaseGrant] = None) -> bool:
        """
        Persist the finalized ``intent`` only if the stored copy is still pending.

        When ``grant`` is given it is inserted in the same atomic step. Returns
        False, writing nothing, when the stored intent is missing or already finalized.
        """

    @abstractmethod
    def list_grants(self, payer_id: str, project_id: Optional[str] = None) -> List[PurchaseGrant]:
        """List confirmed grants for a payer, newest first."""

    @abstractmethod
    def get_grant_by_tx_hash(self, tx_hash: str) -> Optional[PurchaseGrant]:
        """Return the confirmed grant credited with ``tx_hash``, if any."""

    def check_health(self) -> StorageStatus:
        """Run the backend health check and record the outcome."""
        start_time = time.time()
        try:
            self._perform_health_check()
            response_time = (time.time() - start_time) * 1000
            self.status = StorageStatus(is_healthy=True, response_time_ms=response_time)
            logger.debug("Health check passed for storage %s (%.2fms)", self.name, response_time)
        except Exception as e:
            response_time = (time.time() - start_time) * 1000
            logger.warning(
                "Health check failed for storage %s (%.2fms): %s (%s)", self.name, response_time, str(e), type(e).__name__
            )
            self.status = StorageStatus(
                is_healthy=False,
                error_message=f"Health check failed: {str(e)}",
                response_time_ms=response_time,
            )
        return self.status

    def get_capabilities(self) -> StorageCapabilities:
        return self.capabilities

    def get_storage_info(self) -> Dict[str, Any]:
        """Get comprehensive storage information."""
        return {
            "name": self.name,
            "capabilities": self.capabilities.to_dict(),
            "status": self.status.to_dict(),
        }
