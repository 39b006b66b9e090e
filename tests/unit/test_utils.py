import logging
from datetime import datetime, timezone

import pytest

from layr_payments.logging_config import SecretRedactor, get_logger, log_performance, set_log_level
from layr_payments.utils import (
    format_amount,
    generate_id,
    is_valid_address,
    normalize_address,
    normalize_tx_hash,
    parse_amount,
    parse_datetime,
    redact_message,
    retry,
)


def test_generate_id_prefix_and_uniqueness():
    ids = {generate_id("pay_") for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("pay_") for i in ids)
    assert len(generate_id()) >= 32


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0xABCDEF", "0xabcdef"),
        ("abcdef", "0xabcdef"),
        ("  0x0A1  ", "0x0a1"),
    ],
)
def test_normalize_address(raw, expected):
    assert normalize_address(raw) == expected


def test_normalize_address_keeps_leading_zeros():
    assert normalize_address("0x00ab") != normalize_address("0xab")


@pytest.mark.parametrize("raw", ["", "0x", "0xzz", "0x" + "a" * 65, None, 42])
def test_normalize_address_rejects(raw):
    with pytest.raises(ValueError):
        normalize_address(raw)
    assert not is_valid_address(raw)


def test_normalize_tx_hash():
    raw = "0X" + "AB" * 32
    assert normalize_tx_hash(raw.lower()) == "0x" + "ab" * 32
    assert normalize_tx_hash("ab" * 32) == "0x" + "ab" * 32


@pytest.mark.parametrize("raw", ["0x1234", "0x" + "g" * 64, "", 123])
def test_normalize_tx_hash_rejects(raw):
    with pytest.raises(ValueError):
        normalize_tx_hash(raw)


def test_parse_amount():
    assert parse_amount(100000000) == 100000000
    assert parse_amount("99999999") == 99999999
    assert parse_amount(0) == 0


@pytest.mark.parametrize("raw", [True, 1.5, "1.5", "-1", -1, None, "abc"])
def test_parse_amount_rejects(raw):
    with pytest.raises(ValueError):
        parse_amount(raw)


def test_format_amount():
    assert format_amount(100000000) == "1 MOVE"
    assert format_amount(150000000) == "1.5 MOVE"
    assert format_amount(1, currency="") == "0.00000001"


def test_parse_datetime():
    dt = parse_datetime("2024-01-01T00:00:00Z")
    assert dt == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_datetime("2024-01-01T00:00:00").tzinfo is timezone.utc
    shifted = parse_datetime("2024-01-01T02:00:00+02:00")
    assert shifted.tzinfo is timezone.utc
    assert shifted.hour == 0
    assert parse_datetime("2024-01-01") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None


def test_retry_succeeds_after_transient_errors():
    calls = []

    @retry(ConnectionError, max_attempts=3, initial_delay=0, jitter=False)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("boom")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_retry_reraises_original_exception():
    @retry(ConnectionError, max_attempts=2, initial_delay=0, jitter=False)
    def always_fails():
        raise ConnectionError("still down")

    with pytest.raises(ConnectionError, match="still down"):
        always_fails()


def test_retry_does_not_retry_logic_errors():
    with pytest.raises(ValueError):
        retry(ValueError)


def test_retry_validates_arguments():
    with pytest.raises(ValueError):
        retry(max_attempts=0)
    with pytest.raises(ValueError):
        retry(backoff_factor=0.5)


def test_secret_redactor_hides_keys_not_addresses():
    key = "ed25519-priv-0x" + "1f" * 32
    address = "0x" + "a1" * 32
    text = SecretRedactor.redact(f"signer {key} paying {address} with token=abc123")
    assert "1f" * 32 not in text
    assert "token=***REDACTED***" in text
    assert address in text
    assert redact_message("Bearer abc.def") == "Bearer ***REDACTED***"


def test_secret_redactor_filters_record_args():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "key %s", ("private_key=" + "ab" * 32,), None)
    SecretRedactor().filter(record)
    assert "ab" * 32 not in record.getMessage()


def test_get_logger_and_set_level():
    logger = get_logger("layr_payments.test")
    set_log_level("debug", "layr_payments.test")
    assert logger.level == logging.DEBUG
    with pytest.raises(ValueError):
        get_logger("")


def test_log_performance(caplog):
    logger = logging.getLogger("layr_payments.perf")
    with caplog.at_level(logging.DEBUG, logger="layr_payments.perf"):
        log_performance("op", 1.0, 1.5, logger)
        log_performance("bad", 2.0, 1.0, logger)
    assert "op took 0.500 seconds" in caplog.text
    assert "Invalid performance timing for bad" in caplog.text
