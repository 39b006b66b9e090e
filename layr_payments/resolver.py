"""
Price and recipient resolution.

Maps a (project, tier) pair to the amount due and the wallet that must receive it.
Payments go straight to the project owner, so the recipient is looked up per
project at intent creation time.
"""

import logging
from dataclasses import dataclass

from .exceptions import ProjectNotFound, RecipientWalletMissing, ValidationError
from .models import AccessTier, Project
from .storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentQuote:
    project: Project
    tier: AccessTier
    amount: int
    recipient: str


class PriceResolver:
    """Read-only view over the project catalog."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def get_project(self, project_id: str) -> Project:
        if not project_id or not isinstance(project_id, str):
            raise ValidationError("projectId is required", field="project_id", value=project_id)
        project = self.storage.get_project(project_id)
        if project is None:
            raise ProjectNotFound("Project not found", project_id=project_id)
        return project

    def resolve(self, project_id: str, tier: AccessTier | str) -> PaymentQuote:
        """
        Resolve the amount due and the payee wallet for ``tier`` on ``project_id``.

        Raises:
            ProjectNotFound: If the project does not exist.
            RecipientWalletMissing: If the owner record or its wallet is missing.
        """
        tier = AccessTier.parse(tier)
        project = self.get_project(project_id)

        owner = self.storage.get_user(project.owner_id)
        if owner is None:
            raise RecipientWalletMissing("Project owner not found", project_id=project.id, owner_id=project.owner_id)

        recipient = owner.wallet_address or project.owner_wallet
        if not recipient:
            raise RecipientWalletMissing(
                "Project owner wallet not connected", project_id=project.id, owner_id=project.owner_id
            )

        amount = project.price_for(tier)
        logger.debug("Resolved %s on %s to %d payable to %s", tier.value, project.id, amount, recipient)
        return PaymentQuote(project=project, tier=tier, amount=amount, recipient=recipient)
