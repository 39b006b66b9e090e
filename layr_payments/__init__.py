"""
Layr Payments

Payment intents and on-chain payment verification for the Layr code marketplace
on the Movement network.
"""

from . import config, exceptions, models, storage, utils
from .access import AccessQueryService
from .chain import ChainClient, MockChainClient, MovementChainClient
from .core import PaymentManager
from .exceptions import (
    ChainUnavailable,
    DuplicateAccess,
    IntentNotFound,
    LayrPaymentsError,
    PaymentErrorCode,
    ProjectNotFound,
    RecipientWalletMissing,
    ValidationError,
    VerificationCancelled,
)
from .ledger import PaymentLedger
from .models import AccessStatus, AccessTier, PaymentIntent, Project, PurchaseGrant, UserAccount
from .resolver import PriceResolver
from .storage.memory import MemoryStorage
from .verification import VerificationEngine, VerificationOutcome, VerificationResult

__version__ = "0.1.0"

__all__ = [
    "PaymentManager",
    "PaymentLedger",
    "PriceResolver",
    "VerificationEngine",
    "VerificationOutcome",
    "VerificationResult",
    "AccessQueryService",
    "ChainClient",
    "MovementChainClient",
    "MockChainClient",
    "MemoryStorage",
    "models",
    "exceptions",
    "storage",
    "utils",
    "config",
    "AccessTier",
    "AccessStatus",
    "PaymentIntent",
    "PurchaseGrant",
    "Project",
    "UserAccount",
    "LayrPaymentsError",
    "PaymentErrorCode",
    "ValidationError",
    "ProjectNotFound",
    "RecipientWalletMissing",
    "DuplicateAccess",
    "IntentNotFound",
    "ChainUnavailable",
    "VerificationCancelled",
]
