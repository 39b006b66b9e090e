"""
Custom exceptions for the Layr Payments package.

Defines the payment error catalog shared with clients, plus the typed exceptions
raised by the resolver, ledger, chain client and verification engine.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional

logger = logging.getLogger(__name__)


class PaymentErrorCode(str, Enum):
    """Error codes surfaced to clients in payment responses."""

    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    WALLET_DISCONNECTED = "WALLET_DISCONNECTED"
    TX_REJECTED = "TX_REJECTED"
    TX_FAILED = "TX_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    ACCESS_GRANT_FAILED = "ACCESS_GRANT_FAILED"
    ALREADY_HAS_ACCESS = "ALREADY_HAS_ACCESS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONTRACT_ERROR = "CONTRACT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class PaymentErrorInfo:
    """Client-facing description of a payment error."""

    code: PaymentErrorCode
    message: str
    user_message: str
    actionable_steps: tuple[str, ...]
    recoverable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "userMessage": self.user_message,
            "actionableSteps": list(self.actionable_steps),
            "recoverable": self.recoverable,
        }


PAYMENT_ERRORS: dict[PaymentErrorCode, PaymentErrorInfo] = {
    PaymentErrorCode.INSUFFICIENT_BALANCE: PaymentErrorInfo(
        code=PaymentErrorCode.INSUFFICIENT_BALANCE,
        message="User has insufficient MOVE balance",
        user_message="Insufficient MOVE balance",
        actionable_steps=("Add MOVE tokens to your wallet", "Check your wallet balance", "Try a different wallet"),
        recoverable=True,
    ),
    PaymentErrorCode.WALLET_DISCONNECTED: PaymentErrorInfo(
        code=PaymentErrorCode.WALLET_DISCONNECTED,
        message="Wallet not connected",
        user_message="Wallet connection error",
        actionable_steps=("Reconnect your wallet", "Refresh the page", "Check your internet connection"),
        recoverable=True,
    ),
    PaymentErrorCode.TX_REJECTED: PaymentErrorInfo(
        code=PaymentErrorCode.TX_REJECTED,
        message="User rejected the transaction",
        user_message="Transaction rejected",
        actionable_steps=("Try again and approve the transaction", "Check transaction details before approving"),
        recoverable=True,
    ),
    PaymentErrorCode.TX_FAILED: PaymentErrorInfo(
        code=PaymentErrorCode.TX_FAILED,
        message="Blockchain transaction failed",
        user_message="Transaction failed",
        actionable_steps=("Check network status", "Ensure sufficient gas fees", "Try again in a few moments"),
        recoverable=True,
    ),
    PaymentErrorCode.VERIFICATION_FAILED: PaymentErrorInfo(
        code=PaymentErrorCode.VERIFICATION_FAILED,
        message="Payment verification failed",
        user_message="Payment verification failed",
        actionable_steps=("Contact support with your transaction hash", "Do not retry payment"),
        recoverable=False,
    ),
    PaymentErrorCode.ACCESS_GRANT_FAILED: PaymentErrorInfo(
        code=PaymentErrorCode.ACCESS_GRANT_FAILED,
        message="Access grant could not be recorded",
        user_message="Access grant failed",
        actionable_steps=("Try again in a few moments", "Contact support if issue persists"),
        recoverable=True,
    ),
    PaymentErrorCode.ALREADY_HAS_ACCESS: PaymentErrorInfo(
        code=PaymentErrorCode.ALREADY_HAS_ACCESS,
        message="User already has access to this repository",
        user_message="You already have access",
        actionable_steps=("Refresh the page to view content", "No additional payment needed"),
        recoverable=False,
    ),
    PaymentErrorCode.INVALID_AMOUNT: PaymentErrorInfo(
        code=PaymentErrorCode.INVALID_AMOUNT,
        message="Payment amount is invalid or insufficient",
        user_message="Invalid payment amount",
        actionable_steps=("Ensure payment amount matches required price", "Try again"),
        recoverable=True,
    ),
    PaymentErrorCode.NETWORK_ERROR: PaymentErrorInfo(
        code=PaymentErrorCode.NETWORK_ERROR,
        message="Network connection error",
        user_message="Network error",
        actionable_steps=(
            "Check your internet connection",
            "Try again in a few moments",
            "Check Movement network status",
        ),
        recoverable=True,
    ),
    PaymentErrorCode.CONTRACT_ERROR: PaymentErrorInfo(
        code=PaymentErrorCode.CONTRACT_ERROR,
        message="Smart contract error",
        user_message="Contract error",
        actionable_steps=("Try again in a few moments", "Contact support if issue persists"),
        recoverable=True,
    ),
    PaymentErrorCode.UNKNOWN_ERROR: PaymentErrorInfo(
        code=PaymentErrorCode.UNKNOWN_ERROR,
        message="An unknown error occurred",
        user_message="Something went wrong",
        actionable_steps=("Try again", "Contact support if issue persists"),
        recoverable=True,
    ),
}


def create_payment_error(code: PaymentErrorCode, details: Optional[str] = None) -> PaymentErrorInfo:
    """Build a catalog entry for ``code``, appending ``details`` to its internal message."""
    template = PAYMENT_ERRORS[PaymentErrorCode(code)]
    if not details:
        return template
    return PaymentErrorInfo(
        code=template.code,
        message=f"{template.message}: {details}",
        user_message=template.user_message,
        actionable_steps=template.actionable_steps,
        recoverable=template.recoverable,
    )


@dataclass
class LayrPaymentsError(Exception):
    """Base exception for all Layr Payments errors."""

    message: str
    error_code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    # HTTP status the API layer maps this error to
    http_status = 500
    payment_code: ClassVar[Optional[PaymentErrorCode]] = None

    def __post_init__(self):
        logger.error(
            "%s: %s (Code: %s, Details: %s)",
            self.__class__.__name__,
            self.message,
            self.error_code,
            self.details,
        )

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}" if self.error_code else self.message

    def payment_error(self) -> PaymentErrorInfo:
        """Return the catalog entry describing this error to a client."""
        code = self.payment_code or PaymentErrorCode.UNKNOWN_ERROR
        return create_payment_error(code, self.message)

    @property
    def user_message(self) -> str:
        if self.payment_code is None:
            return self.message
        return PAYMENT_ERRORS[self.payment_code].user_message


def _merge_details(details: dict[str, Any], values: dict[str, Any]) -> None:
    details.update({k: v for k, v in values.items() if v is not None})


@dataclass
class ValidationError(LayrPaymentsError):
    """Raised for validation errors."""

    field: Optional[str] = None
    value: Any = None
    constraints: Optional[dict[str, Any]] = None

    http_status = 400

    def __post_init__(self):
        _merge_details(
            self.details,
            {"field": self.field, "value": self.value, "constraints": self.constraints},
        )
        self.error_code = self.error_code or "VALIDATION_ERROR"
        super().__post_init__()


@dataclass
class ConfigurationError(LayrPaymentsError):
    """Raised for configuration errors."""

    config_key: Optional[str] = None
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None

    def __post_init__(self):
        _merge_details(
            self.details,
            {
                "config_key": self.config_key,
                "expected_value": self.expected_value,
                "actual_value": self.actual_value,
            },
        )
        self.error_code = self.error_code or "CONFIGURATION_ERROR"
        super().__post_init__()


@dataclass
class StorageError(LayrPaymentsError):
    """Raised when the ledger storage cannot complete an operation.

    No state change may be assumed when this is raised; callers may retry.
    """

    storage_type: Optional[str] = None
    operation: Optional[str] = None
    entity_id: Optional[str] = None

    http_status = 500
    payment_code = PaymentErrorCode.ACCESS_GRANT_FAILED

    def __post_init__(self):
        _merge_details(
            self.details,
            {"storage_type": self.storage_type, "operation": self.operation, "entity_id": self.entity_id},
        )
        self.error_code = self.error_code or "STORAGE_ERROR"
        super().__post_init__()


@dataclass
class PaymentError(LayrPaymentsError):
    """Base exception for payment flow errors."""

    http_status = 400

    def __post_init__(self):
        self.error_code = self.error_code or (self.payment_code.value if self.payment_code else "PAYMENT_ERROR")
        super().__post_init__()


@dataclass
class ProjectNotFound(PaymentError):
    """Raised when the requested project does not exist."""

    project_id: Optional[str] = None

    http_status = 404

    def __post_init__(self):
        _merge_details(self.details, {"project_id": self.project_id})
        self.error_code = self.error_code or "PROJECT_NOT_FOUND"
        super().__post_init__()


@dataclass
class RecipientWalletMissing(PaymentError):
    """Raised when the project owner has no payable wallet on record."""

    project_id: Optional[str] = None
    owner_id: Optional[str] = None

    http_status = 500
    payment_code = PaymentErrorCode.CONTRACT_ERROR

    def __post_init__(self):
        _merge_details(self.details, {"project_id": self.project_id, "owner_id": self.owner_id})
        super().__post_init__()


@dataclass
class DuplicateAccess(PaymentError):
    """Raised when the payer already holds a confirmed grant for the requested tier."""

    payer_id: Optional[str] = None
    project_id: Optional[str] = None
    tier: Optional[str] = None

    payment_code = PaymentErrorCode.ALREADY_HAS_ACCESS

    def __post_init__(self):
        _merge_details(
            self.details,
            {"payer_id": self.payer_id, "project_id": self.project_id, "tier": self.tier},
        )
        super().__post_init__()


@dataclass
class IntentNotFound(PaymentError):
    """Raised when no pending intent matches the id and payer.

    Covers unknown ids, intents owned by another payer, and intents that have
    already been finalized.
    """

    intent_id: Optional[str] = None
    payer_id: Optional[str] = None

    http_status = 404

    def __post_init__(self):
        _merge_details(self.details, {"intent_id": self.intent_id, "payer_id": self.payer_id})
        self.error_code = self.error_code or "PAYMENT_NOT_FOUND"
        super().__post_init__()


@dataclass
class VerificationCancelled(PaymentError):
    """Raised when the caller abandons a verification before it completes."""

    intent_id: Optional[str] = None

    http_status = 408

    def __post_init__(self):
        _merge_details(self.details, {"intent_id": self.intent_id})
        self.error_code = self.error_code or "VERIFICATION_CANCELLED"
        super().__post_init__()


@dataclass
class ChainError(LayrPaymentsError):
    """Base exception for chain client errors."""

    network: Optional[str] = None
    operation: Optional[str] = None

    http_status = 503
    payment_code = PaymentErrorCode.NETWORK_ERROR

    def __post_init__(self):
        _merge_details(self.details, {"network": self.network, "operation": self.operation})
        self.error_code = self.error_code or self.payment_code.value
        super().__post_init__()


@dataclass
class ChainUnavailable(ChainError):
    """Raised when the chain RPC could not be reached or answered with a server error."""

    status_code: Optional[int] = None

    def __post_init__(self):
        _merge_details(self.details, {"status_code": self.status_code})
        super().__post_init__()


@dataclass
class ChainNotConnected(ChainError):
    """Raised when a chain operation is attempted before the client is connected."""

    def __post_init__(self):
        self.error_code = self.error_code or "CHAIN_NOT_CONNECTED"
        super().__post_init__()


@dataclass
class TransactionNotFound(ChainError):
    """Raised when the chain has no record of a transaction hash yet."""

    tx_hash: Optional[str] = None

    http_status = 404

    def __post_init__(self):
        _merge_details(self.details, {"tx_hash": self.tx_hash})
        self.error_code = self.error_code or "TX_NOT_FOUND"
        super().__post_init__()


@dataclass
class ChainRequestRejected(ChainError):
    """Raised when the chain RPC rejects a request, e.g. a view function abort."""

    status_code: Optional[int] = None

    http_status = 502
    payment_code = PaymentErrorCode.CONTRACT_ERROR

    def __post_init__(self):
        _merge_details(self.details, {"status_code": self.status_code})
        self.error_code = self.error_code or "CHAIN_REQUEST_REJECTED"
        super().__post_init__()
