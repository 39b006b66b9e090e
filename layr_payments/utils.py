"""
Utility functions for the Layr Payments package.

This module contains reusable helpers for identifiers, wallet addresses, integer
amounts, timestamps and a retry decorator for synchronous storage calls.
"""

import logging
import random
import re
import secrets
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from functools import wraps
from typing import Any, Optional, TypeVar, Union

from .logging_config import SecretRedactor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_EXCEPTIONS = (ConnectionError, TimeoutError, sqlite3.OperationalError)

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{1,64}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


def redact_message(msg: str) -> str:
    """Consistent message redaction function for the entire package."""
    return SecretRedactor.redact(msg)


def generate_id(prefix: str = "") -> str:
    """Generate an unguessable identifier with an optional prefix."""
    token = secrets.token_urlsafe(24)
    return f"{prefix}{token}" if prefix else token


def normalize_address(address: Any) -> str:
    """Canonicalize an account address for comparison.

    Lowercases, trims whitespace and adds the ``0x`` prefix when missing.
    Leading zeros are kept as given.
    """
    if not isinstance(address, str):
        raise ValueError(f"Address must be a string, got {type(address).__name__}")
    value = address.strip().lower()
    if not value.startswith("0x"):
        value = f"0x{value}"
    if not _ADDRESS_RE.match(value):
        raise ValueError(f"Invalid account address: {address!r}")
    return value


def is_valid_address(address: Any) -> bool:
    try:
        normalize_address(address)
    except ValueError:
        return False
    return True


def normalize_tx_hash(tx_hash: Any) -> str:
    """Return the lowercase ``0x``-prefixed form of a 32-byte transaction hash."""
    if not isinstance(tx_hash, str):
        raise ValueError(f"Transaction hash must be a string, got {type(tx_hash).__name__}")
    value = tx_hash.strip().lower()
    if not value.startswith("0x"):
        value = f"0x{value}"
    if not _TX_HASH_RE.match(value):
        raise ValueError(f"Invalid transaction hash: {tx_hash!r}")
    return value


def parse_amount(value: Any) -> int:
    """Parse an amount in the smallest currency unit.

    Accepts ints and decimal digit strings (as chain payload arguments arrive).
    Floats are rejected so amounts never go through binary rounding.
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be an integer, got bool")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ValueError(f"Amount must be an integer in the smallest unit, got {value!r}")
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    return amount


def format_amount(amount: int, decimals: int = 8, currency: str = "MOVE") -> str:
    """Render a smallest-unit amount as a human readable string, e.g. ``1.5 MOVE``."""
    value = Decimal(amount).scaleb(-decimals).normalize()
    text = format(value, "f")
    return f"{text} {currency}" if currency else text


def parse_datetime(datetime_str: str) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime, or None if invalid.

    Naive values are taken as UTC.
    """
    if not isinstance(datetime_str, str):
        return None
    try:
        dt = datetime.fromisoformat(datetime_str.replace("Z", "+00:00"))
    except ValueError as e:
        logger.debug("Invalid datetime format: %s", redact_message(str(e)))
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def retry(
    exceptions: Union[type[Exception], tuple[type[Exception], ...]] = DEFAULT_RETRY_EXCEPTIONS,
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    logger: Optional[logging.Logger] = None,
    retry_message: Optional[str] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator to retry a function on specified exceptions with exponential backoff.
    Sensitive data in exception messages is always redacted in logs.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if initial_delay < 0:
        raise ValueError("initial_delay must be non-negative")
    if backoff_factor < 1:
        raise ValueError("backoff_factor must be at least 1")
    if max_delay < initial_delay:
        raise ValueError("max_delay must be at least initial_delay")

    # Exclude critical system exceptions from retrying
    if isinstance(exceptions, type) and exceptions is Exception:
        exceptions = DEFAULT_RETRY_EXCEPTIONS
    safe_exceptions = tuple(
        exc
        for exc in (exceptions if isinstance(exceptions, tuple) else (exceptions,))
        if not issubclass(exc, (KeyboardInterrupt, SystemExit, MemoryError, ValueError, TypeError))
    )
    if not safe_exceptions:
        raise ValueError("No retryable exceptions provided after excluding critical/logic errors")

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except safe_exceptions as e:
                    redacted_msg = redact_message(str(e))
                    if attempt == max_attempts:
                        if logger:
                            logger.error(
                                "Function %s failed after %d attempts: %s",
                                func.__name__,
                                max_attempts,
                                redacted_msg,
                            )
                        raise
                    actual_delay = min(delay, max_delay)
                    if jitter:
                        actual_delay *= 0.75 + random.random() * 0.5
                    if logger:
                        message = retry_message or f"Retrying {func.__name__}..."
                        logger.warning(
                            "%s (attempt %d/%d, delay %.2fs): %s",
                            message,
                            attempt,
                            max_attempts,
                            actual_delay,
                            redacted_msg,
                        )
                    if on_retry:
                        on_retry(attempt, e)
                    time.sleep(actual_delay)
                    delay *= backoff_factor
            raise RuntimeError(f"Function {func.__name__} failed unexpectedly")

        return wrapper

    return decorator
