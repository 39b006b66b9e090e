import pytest

from layr_payments.exceptions import (
    PAYMENT_ERRORS,
    ChainError,
    ChainNotConnected,
    ChainRequestRejected,
    ChainUnavailable,
    ConfigurationError,
    DuplicateAccess,
    IntentNotFound,
    LayrPaymentsError,
    PaymentErrorCode,
    ProjectNotFound,
    RecipientWalletMissing,
    StorageError,
    TransactionNotFound,
    ValidationError,
    VerificationCancelled,
    create_payment_error,
)


def test_layr_payments_error_str():
    err = LayrPaymentsError("msg", error_code="E1", details={"foo": "bar"})
    assert str(err) == "[E1] msg"
    assert err.details["foo"] == "bar"


def test_error_without_code_str():
    assert str(LayrPaymentsError("plain")) == "plain"


def test_validation_error_details():
    err = ValidationError("bad", field="amount", value=-1)
    assert err.error_code == "VALIDATION_ERROR"
    assert err.details == {"field": "amount", "value": -1}
    assert err.http_status == 400
    assert err.user_message == "bad"


def test_configuration_error_details():
    err = ConfigurationError("cfg", config_key="ChainId", expected_value="177", actual_value="1")
    assert err.error_code == "CONFIGURATION_ERROR"
    assert err.details["config_key"] == "ChainId"
    assert err.details["actual_value"] == "1"


def test_storage_error_is_retryable_grant_failure():
    err = StorageError("disk", storage_type="database", operation="finalize")
    assert err.error_code == "STORAGE_ERROR"
    assert err.http_status == 500
    info = err.payment_error()
    assert info.code is PaymentErrorCode.ACCESS_GRANT_FAILED
    assert info.recoverable is True


def test_project_not_found():
    err = ProjectNotFound("Project not found", project_id="p1")
    assert err.http_status == 404
    assert err.error_code == "PROJECT_NOT_FOUND"
    assert err.details["project_id"] == "p1"


def test_recipient_wallet_missing_maps_to_contract_error():
    err = RecipientWalletMissing("Project owner wallet not connected", project_id="p1", owner_id="o1")
    assert err.error_code == "CONTRACT_ERROR"
    assert err.http_status == 500
    assert err.user_message == "Contract error"


def test_duplicate_access():
    err = DuplicateAccess("dup", payer_id="u1", project_id="p1", tier="demo")
    assert err.error_code == "ALREADY_HAS_ACCESS"
    assert err.http_status == 400
    assert err.payment_error().recoverable is False
    assert err.details["tier"] == "demo"


def test_intent_not_found():
    err = IntentNotFound("Payment not found or already processed", intent_id="pay_1", payer_id="u1")
    assert err.http_status == 404
    assert err.error_code == "PAYMENT_NOT_FOUND"


def test_verification_cancelled():
    err = VerificationCancelled("cancelled", intent_id="pay_1")
    assert err.error_code == "VERIFICATION_CANCELLED"
    assert err.http_status == 408


@pytest.mark.parametrize(
    "cls,code",
    [
        (ChainUnavailable, "NETWORK_ERROR"),
        (ChainNotConnected, "CHAIN_NOT_CONNECTED"),
        (TransactionNotFound, "TX_NOT_FOUND"),
        (ChainRequestRejected, "CHAIN_REQUEST_REJECTED"),
    ],
)
def test_chain_errors(cls, code):
    err = cls("chain", network="movement", operation="get_transaction")
    assert isinstance(err, ChainError)
    assert err.error_code == code
    assert err.details["network"] == "movement"


def test_chain_unavailable_is_recoverable_network_error():
    err = ChainUnavailable("down", status_code=503)
    assert err.http_status == 503
    info = err.payment_error()
    assert info.code is PaymentErrorCode.NETWORK_ERROR
    assert info.recoverable is True
    assert err.details["status_code"] == 503


def test_catalog_covers_every_code():
    assert set(PAYMENT_ERRORS) == set(PaymentErrorCode)


def test_create_payment_error_appends_details():
    info = create_payment_error(PaymentErrorCode.TX_FAILED, "Move abort")
    assert info.message == "Blockchain transaction failed: Move abort"
    assert info.user_message == "Transaction failed"
    assert create_payment_error(PaymentErrorCode.TX_FAILED) is PAYMENT_ERRORS[PaymentErrorCode.TX_FAILED]


def test_payment_error_info_to_dict():
    data = PAYMENT_ERRORS[PaymentErrorCode.VERIFICATION_FAILED].to_dict()
    assert data["code"] == "VERIFICATION_FAILED"
    assert data["recoverable"] is False
    assert "Do not retry payment" in data["actionableSteps"]
