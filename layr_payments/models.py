"""
Data models for the Layr Payments package.

Defines the catalog records read by the resolver (projects, users), the ledger
records (payment intents, purchase grants), the chain transaction view and the
access query result.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from .config import CURRENCY, INTENT_TTL_MINUTES
from .exceptions import PaymentErrorCode, ValidationError
from .utils import normalize_address

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_\-:.]+$")


def _validate_string_field(value: str, field_name: str, max_length: int = 255) -> None:
    """Validate a free-text field."""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name, value=value)
    if len(value.strip()) == 0:
        raise ValidationError(f"{field_name} cannot be empty", field=field_name, value=value)
    if len(value) > max_length:
        raise ValidationError(f"{field_name} exceeds maximum length of {max_length} characters", field=field_name, value=value)
    if not all(ord(c) >= 32 or c in "\t\n\r" for c in value):
        raise ValidationError(f"{field_name} contains non-printable characters", field=field_name, value=value)


def _validate_identifier(value: str, field_name: str, max_length: int = 100) -> None:
    """Validate an opaque identifier such as a user, project or intent id."""
    _validate_string_field(value, field_name, max_length=max_length)
    if not _IDENTIFIER_RE.match(value):
        raise ValidationError(f"{field_name} contains invalid characters", field=field_name, value=value)


def _validate_amount(value: Any, field_name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"{field_name} must be a non-negative integer in the smallest currency unit", field=field_name, value=value
        )


def _coerce_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValidationError(
            f"Invalid {field_name}: {value}. Must be one of: {', '.join(valid)}",
            field=field_name,
            value=value,
        )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AccessTier(Enum):
    """Purchasable access tiers, ordered by what they unlock."""

    DEMO = "demo"
    DOWNLOAD = "download"

    @property
    def level(self) -> int:
        """Integer level used by the on-chain access registry."""
        return 2 if self is AccessTier.DOWNLOAD else 1

    def covers(self, other: "AccessTier") -> bool:
        """A download grant also unlocks the demo tier."""
        return self.level >= other.level

    @classmethod
    def from_level(cls, level: int) -> Optional["AccessTier"]:
        if level >= 2:
            return cls.DOWNLOAD
        if level == 1:
            return cls.DEMO
        return None

    @classmethod
    def parse(cls, value: Any) -> "AccessTier":
        return _coerce_enum(cls, value.lower() if isinstance(value, str) else value, "access_type")


class IntentStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class GrantStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ChainTxStatus(Enum):
    """Execution status of a transaction as reported by the chain."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class FailureReason(Enum):
    """Why a verified transaction did not satisfy its intent."""

    TX_FAILED = "tx_failed"
    NOT_A_TRANSFER = "not_a_transfer"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    WRONG_RECIPIENT = "wrong_recipient"
    TX_ALREADY_USED = "tx_already_used"
    ALREADY_GRANTED = "already_granted"

    @property
    def error_code(self) -> PaymentErrorCode:
        return _FAILURE_CODES[self]


_FAILURE_CODES = {
    FailureReason.TX_FAILED: PaymentErrorCode.TX_FAILED,
    FailureReason.NOT_A_TRANSFER: PaymentErrorCode.VERIFICATION_FAILED,
    FailureReason.INSUFFICIENT_AMOUNT: PaymentErrorCode.INVALID_AMOUNT,
    FailureReason.WRONG_RECIPIENT: PaymentErrorCode.VERIFICATION_FAILED,
    FailureReason.TX_ALREADY_USED: PaymentErrorCode.VERIFICATION_FAILED,
    # A grant for the same key landed through another intent
    FailureReason.ALREADY_GRANTED: PaymentErrorCode.VERIFICATION_FAILED,
}


@dataclass
class UserAccount:
    """A marketplace user and the wallet they receive payments on."""

    id: str
    wallet_address: Optional[str] = None
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        _validate_identifier(self.id, "User ID")
        if self.wallet_address is not None:
            try:
                self.wallet_address = normalize_address(self.wallet_address)
            except ValueError as e:
                raise ValidationError(str(e), field="wallet_address", value=self.wallet_address)
        if self.display_name is not None:
            _validate_string_field(self.display_name, "Display name")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _isoformat(self.created_at)
        return data


@dataclass
class Project:
    """A listed repository with its per-tier prices in the smallest currency unit."""

    id: str
    owner_id: str
    title: str = ""
    demo_price: int = 0
    download_price: int = 0
    owner_wallet: Optional[str] = None
    chain_repo_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        _validate_identifier(self.id, "Project ID")
        _validate_identifier(self.owner_id, "Owner ID")
        _validate_amount(self.demo_price, "demo_price")
        _validate_amount(self.download_price, "download_price")
        if self.owner_wallet is not None:
            try:
                self.owner_wallet = normalize_address(self.owner_wallet)
            except ValueError as e:
                raise ValidationError(str(e), field="owner_wallet", value=self.owner_wallet)
        if self.chain_repo_id is not None and (isinstance(self.chain_repo_id, bool) or not isinstance(self.chain_repo_id, int)):
            raise ValidationError("chain_repo_id must be an integer", field="chain_repo_id", value=self.chain_repo_id)

    def price_for(self, tier: AccessTier) -> int:
        return self.download_price if tier is AccessTier.DOWNLOAD else self.demo_price

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _isoformat(self.created_at)
        return data


@dataclass
class PaymentIntent:
    """A server-issued promise to grant ``tier`` on ``project_id`` once ``amount`` reaches ``recipient``.

    Intents are never deleted. Status only moves out of ``pending`` once, through
    the ledger's conditional finalize.
    """

    id: str
    payer_id: str
    project_id: str
    tier: AccessTier | str
    amount: int
    recipient: str
    currency: str = CURRENCY
    status: IntentStatus | str = IntentStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    block_ref: Optional[str] = None
    amount_paid: Optional[int] = None
    failure_reason: Optional[FailureReason | str] = None
    finalized_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.tier = _coerce_enum(AccessTier, self.tier, "tier")
        self.status = _coerce_enum(IntentStatus, self.status, "status")
        if self.failure_reason is not None:
            self.failure_reason = _coerce_enum(FailureReason, self.failure_reason, "failure_reason")
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(minutes=INTENT_TTL_MINUTES)
        self.validate()
        logger.debug("Created payment intent %s for project %s", self.id, self.project_id)

    def validate(self) -> None:
        _validate_identifier(self.id, "Intent ID")
        _validate_identifier(self.payer_id, "Payer ID")
        _validate_identifier(self.project_id, "Project ID")
        _validate_amount(self.amount, "amount")
        try:
            self.recipient = normalize_address(self.recipient)
        except ValueError as e:
            raise ValidationError(str(e), field="recipient", value=self.recipient)
        if self.expires_at < self.created_at:
            raise ValidationError("Expiry cannot be before creation", field="expires_at", value=self.expires_at)
        if self.amount_paid is not None:
            _validate_amount(self.amount_paid, "amount_paid")

    def is_pending(self) -> bool:
        return self.status is IntentStatus.PENDING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def mark_confirmed(self, tx_hash: str, block_ref: Optional[str] = None, amount_paid: Optional[int] = None) -> None:
        """Mark the intent as paid by ``tx_hash``."""
        if not self.is_pending():
            raise ValidationError(
                f"Cannot confirm intent from status '{self.status.value}'. Only pending intents can be finalized.",
                field="status",
                value=self.status.value,
            )
        self.status = IntentStatus.CONFIRMED
        self.tx_hash = tx_hash
        self.block_ref = block_ref
        self.amount_paid = amount_paid
        self.finalized_at = datetime.now(timezone.utc)

    def mark_failed(
        self,
        reason: FailureReason,
        tx_hash: Optional[str] = None,
        block_ref: Optional[str] = None,
        amount_paid: Optional[int] = None,
    ) -> None:
        """Mark the intent as failed verification for ``reason``."""
        if not self.is_pending():
            raise ValidationError(
                f"Cannot fail intent from status '{self.status.value}'. Only pending intents can be finalized.",
                field="status",
                value=self.status.value,
            )
        self.status = IntentStatus.FAILED
        self.failure_reason = reason
        self.tx_hash = tx_hash
        self.block_ref = block_ref
        self.amount_paid = amount_paid
        self.finalized_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["status"] = self.status.value
        data["failure_reason"] = self.failure_reason.value if self.failure_reason else None
        data["created_at"] = _isoformat(self.created_at)
        data["expires_at"] = _isoformat(self.expires_at)
        data["finalized_at"] = _isoformat(self.finalized_at)
        return data


@dataclass
class PurchaseGrant:
    """Durable record that ``payer_id`` holds ``tier`` on ``project_id``, paid by ``tx_hash``."""

    id: str
    payer_id: str
    project_id: str
    tier: AccessTier | str
    amount: int
    tx_hash: str
    intent_id: str
    block_ref: Optional[str] = None
    currency: str = CURRENCY
    status: GrantStatus | str = GrantStatus.CONFIRMED
    granted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.tier = _coerce_enum(AccessTier, self.tier, "tier")
        self.status = _coerce_enum(GrantStatus, self.status, "status")
        _validate_identifier(self.id, "Grant ID")
        _validate_identifier(self.payer_id, "Payer ID")
        _validate_identifier(self.project_id, "Project ID")
        _validate_amount(self.amount, "amount")
        _validate_string_field(self.tx_hash, "Transaction hash", max_length=130)

    def is_confirmed(self) -> bool:
        return self.status is GrantStatus.CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["status"] = self.status.value
        data["granted_at"] = _isoformat(self.granted_at)
        return data


@dataclass
class ChainTransactionView:
    """What the chain reports about a transaction.

    ``recipient`` and ``amount`` are None when the transaction is not a coin transfer.
    """

    tx_hash: str
    status: ChainTxStatus
    sender: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[int] = None
    block_ref: Optional[str] = None
    vm_status: Optional[str] = None

    def is_transfer(self) -> bool:
        return self.recipient is not None and self.amount is not None


@dataclass
class AccessStatus:
    """Result of an access query for one caller and project."""

    project_id: str
    has_demo: bool = False
    has_download: bool = False
    is_owner: bool = False
    source: str = "none"
    granted_at: Optional[datetime] = None
    onchain_tier: Optional[AccessTier] = None
    discrepancy: bool = False
    fallback: bool = False

    @property
    def highest_tier(self) -> Optional[AccessTier]:
        if self.has_download:
            return AccessTier.DOWNLOAD
        if self.has_demo:
            return AccessTier.DEMO
        return None

    @property
    def has_access(self) -> bool:
        return self.has_demo or self.has_download

    def to_dict(self) -> dict[str, Any]:
        tier = self.highest_tier
        return {
            "projectId": self.project_id,
            "hasAccess": self.has_access,
            "accessType": tier.level if tier else 0,
            "tier": tier.value if tier else None,
            "grantedAt": _isoformat(self.granted_at),
            "hasDemo": self.has_demo,
            "hasDownload": self.has_download,
            "isOwner": self.is_owner,
            "source": self.source,
            "onchainTier": self.onchain_tier.value if self.onchain_tier else None,
            "discrepancy": self.discrepancy,
            "fallback": self.fallback,
        }
