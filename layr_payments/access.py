"""
Access queries.

The ledger is the source of truth for who holds which tier. The on-chain access
registry is consulted only as an advisory mirror: a disagreement is logged and
flagged on the result but never changes the answer.
"""

import asyncio
import logging
from typing import Optional

from .chain.base import ChainClient
from .exceptions import ChainError, ConfigurationError, ProjectNotFound, ValidationError
from .ledger import PaymentLedger
from .models import AccessStatus, AccessTier, Project
from .storage.base import StorageBackend
from .utils import normalize_address

logger = logging.getLogger(__name__)


class AccessQueryService:
    """Answers "what can this caller see on this project"."""

    def __init__(self, storage: StorageBackend, ledger: PaymentLedger, chain_client: Optional[ChainClient] = None):
        self.storage = storage
        self.ledger = ledger
        self.chain_client = chain_client

    async def check_access(
        self, project_id: str, user_id: Optional[str] = None, wallet: Optional[str] = None
    ) -> AccessStatus:
        """
        Return the access a caller holds on ``project_id``.

        The caller is identified by ``user_id``, ``wallet`` or both. Owners get
        full access without a ledger lookup.

        Raises:
            ValidationError: If neither identity is given or the wallet is malformed.
            ProjectNotFound: If the project does not exist.
        """
        if not user_id and not wallet:
            raise ValidationError("userId or userAddress is required", field="user_id")
        if wallet:
            try:
                wallet = normalize_address(wallet)
            except ValueError as e:
                raise ValidationError(str(e), field="user_address", value=wallet)

        project = await asyncio.to_thread(self.storage.get_project, project_id)
        if project is None:
            raise ProjectNotFound("Project not found", project_id=project_id)

        if await asyncio.to_thread(self._is_owner, project, user_id, wallet):
            logger.debug("Caller is owner of project %s", project_id)
            return AccessStatus(project_id=project.id, has_demo=True, has_download=True, is_owner=True, source="owner")

        payer_id = user_id
        if payer_id is None:
            account = await asyncio.to_thread(self.storage.get_user_by_wallet, wallet)
            payer_id = account.id if account else None

        status = AccessStatus(project_id=project.id)
        if payer_id is not None:
            grant = await asyncio.to_thread(self.ledger.highest_grant, payer_id, project.id)
            if grant is not None:
                status.has_download = grant.tier is AccessTier.DOWNLOAD
                status.has_demo = True
                status.granted_at = grant.granted_at
                status.source = "ledger"

        if wallet:
            await self._compare_onchain(project, wallet, status)
        return status

    def _is_owner(self, project: Project, user_id: Optional[str], wallet: Optional[str]) -> bool:
        if user_id is not None and user_id == project.owner_id:
            return True
        if not wallet:
            return False
        if project.owner_wallet == wallet:
            return True
        owner = self.storage.get_user(project.owner_id)
        return owner is not None and owner.wallet_address == wallet

    async def _compare_onchain(self, project: Project, wallet: str, status: AccessStatus) -> None:
        """Record the on-chain tier on ``status`` and flag a disagreement with the ledger."""
        client = self.chain_client
        if client is None or project.chain_repo_id is None or not client.supports_access_queries:
            return
        if not client.connected:
            status.fallback = True
            return

        try:
            onchain = await client.get_access_type(wallet, project.chain_repo_id)
        except (ChainError, ConfigurationError) as e:
            logger.warning("On-chain access query failed for %s on %s, using ledger only: %s", wallet, project.id, e)
            status.fallback = True
            return

        status.onchain_tier = onchain
        if onchain != status.highest_tier:
            status.discrepancy = True
            logger.warning(
                "Access mismatch for %s on %s: ledger=%s chain=%s",
                wallet,
                project.id,
                status.highest_tier.value if status.highest_tier else "none",
                onchain.value if onchain else "none",
            )
