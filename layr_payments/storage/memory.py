"""
In-memory storage backend for development and testing.

This backend stores all data in memory and is not persistent.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from ..exceptions import StorageError, ValidationError
from ..models import AccessTier, IntentStatus, PaymentIntent, Project, PurchaseGrant, UserAccount
from .base import StorageBackend, StorageCapabilities

logger = logging.getLogger(__name__)


class MemoryStorage(StorageBackend):
    """
    In-memory storage backend for development and testing.

    A single re-entrant lock guards every read and write, which makes the
    conditional finalize atomic. Records are copied on the way in and out so
    callers can never mutate stored state without going through the backend.
    """

    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.users: Dict[str, UserAccount] = {}
        self.intents: Dict[str, PaymentIntent] = {}
        self.grants: Dict[str, PurchaseGrant] = {}
        self._lock = threading.RLock()
        super().__init__("MemoryStorage")

    def _get_capabilities(self):
        return StorageCapabilities(
            supports_transactions=True,
            supports_persistence=False,
            supports_concurrent_access=True,
            supports_pagination=True,
        )

    def _validate_configuration(self):
        # No configuration needed for memory storage
        pass

    def _perform_health_check(self):
        with self._lock:
            _ = len(self.intents)
            _ = len(self.grants)

    @staticmethod
    def _require_id(value: str, field_name: str) -> None:
        if not value or not isinstance(value, str):
            raise ValidationError(f"Invalid {field_name}", field=field_name, value=value)

    def save_project(self, project: Project) -> None:
        if not isinstance(project, Project):
            raise ValidationError("Invalid project object", field="project", value=project)
        project.validate()
        with self._lock:
            self.projects[project.id] = copy.copy(project)
        logger.info("Saved project: %s", project.id)

    def get_project(self, project_id: str) -> Optional[Project]:
        self._require_id(project_id, "project_id")
        with self._lock:
            project = self.projects.get(project_id)
            return copy.copy(project) if project else None

    def save_user(self, user: UserAccount) -> None:
        if not isinstance(user, UserAccount):
            raise ValidationError("Invalid user object", field="user", value=user)
        user.validate()
        with self._lock:
            self.users[user.id] = copy.copy(user)
        logger.info("Saved user: %s", user.id)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        self._require_id(user_id, "user_id")
        with self._lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_wallet(self, wallet_address: str) -> Optional[UserAccount]:
        self._require_id(wallet_address, "wallet_address")
        with self._lock:
            for user in self.users.values():
                if user.wallet_address == wallet_address:
                    return copy.copy(user)
        return None

    def save_intent(self, intent: PaymentIntent) -> None:
        if not isinstance(intent, PaymentIntent):
            raise ValidationError("Invalid payment intent object", field="intent", value=intent)
        with self._lock:
            if intent.id in self.intents:
                raise StorageError(
                    f"Payment intent {intent.id} already exists",
                    storage_type=self.name,
                    operation="save_intent",
                    entity_id=intent.id,
                )
            self.intents[intent.id] = copy.copy(intent)
        logger.debug("Saved payment intent: %s", intent.id)

    def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        self._require_id(intent_id, "intent_id")
        with self._lock:
            intent = self.intents.get(intent_id)
            return copy.copy(intent) if intent else None

    def find_open_intent(self, payer_id: str, project_id: str, tier: AccessTier) -> Optional[PaymentIntent]:
        with self._lock:
            candidates = [
                intent
                for intent in self.intents.values()
                if intent.payer_id == payer_id
                and intent.project_id == project_id
                and intent.tier is tier
                and intent.is_pending()
            ]
            if not candidates:
                return None
            return copy.copy(max(candidates, key=lambda i: i.created_at))

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
        def matches_party(intent: PaymentIntent) -> bool:
            checks = []
            if payer_id is not None:
                checks.append(intent.payer_id == payer_id)
            if recipient is not None:
                checks.append(intent.recipient == recipient)
            if not checks:
                return True
            return any(checks) if either_party else all(checks)

        with self._lock:
            intents = [
                copy.copy(intent)
                for intent in self.intents.values()
                if matches_party(intent)
                and (project_id is None or intent.project_id == project_id)
                and (status is None or intent.status is status)
                and (since is None or intent.created_at >= since)
                and (until is None or intent.created_at <= until)
            ]
        intents.sort(key=lambda i: i.created_at, reverse=True)
        return intents

    def finalize_intent(self, intent: PaymentIntent, grant: Optional[PurchaseGrant] = None) -> bool:
        with self._lock:
            stored = self.intents.get(intent.id)
            if stored is None:
                logger.warning("Intent %s does not exist, finalize skipped", intent.id)
                return False
            if not stored.is_pending():
                logger.info("Intent %s already finalized as %s, skipping", intent.id, stored.status.value)
                return False
            if grant is not None:
                self._check_grant_constraints(grant)
                self.grants[grant.id] = copy.copy(grant)
            self.intents[intent.id] = copy.copy(intent)
        logger.info("Finalized intent %s as %s", intent.id, intent.status.value)
        return True

    def _check_grant_constraints(self, grant: PurchaseGrant) -> None:
        for existing in self.grants.values():
            if not existing.is_confirmed():
                continue
            if existing.tx_hash == grant.tx_hash:
                raise StorageError(
                    f"Transaction {grant.tx_hash} already credited to grant {existing.id}",
                    error_code="CONSTRAINT_VIOLATION",
                    storage_type=self.name,
                    operation="finalize_intent",
                    entity_id=grant.intent_id,
                )
            if (existing.payer_id, existing.project_id, existing.tier) == (grant.payer_id, grant.project_id, grant.tier):
                raise StorageError(
                    f"Grant for {grant.payer_id}/{grant.project_id}/{grant.tier.value} already exists",
                    error_code="CONSTRAINT_VIOLATION",
                    storage_type=self.name,
                    operation="finalize_intent",
                    entity_id=grant.intent_id,
                )

    def list_grants(self, payer_id: str, project_id: Optional[str] = None) -> List[PurchaseGrant]:
        self._require_id(payer_id, "payer_id")
        with self._lock:
            grants = [
                copy.copy(grant)
                for grant in self.grants.values()
                if grant.payer_id == payer_id
                and grant.is_confirmed()
                and (project_id is None or grant.project_id == project_id)
            ]
        grants.sort(key=lambda g: g.granted_at, reverse=True)
        return grants

    def get_grant_by_tx_hash(self, tx_hash: str) -> Optional[PurchaseGrant]:
        self._require_id(tx_hash, "tx_hash")
        with self._lock:
            for grant in self.grants.values():
                if grant.tx_hash == tx_hash and grant.is_confirmed():
                    return copy.copy(grant)
        return None
