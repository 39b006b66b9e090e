"""
Configuration module for the Layr Payments package.

Handles environment-based configuration for storage backends, the Movement chain
connection, and the verification retry policy.
"""

import logging
import os
from typing import List

logger = logging.getLogger(__name__)

ENV_PREFIX = "LayrPayments_"

# Default configuration values
DEFAULT_ENABLED_STORAGE = "memory,database"
DEFAULT_RPC_URL = "https://testnet.movementnetwork.xyz/v1"
DEFAULT_CHAIN_ID = 177
DEFAULT_CONTRACT_ADDRESS = ""
DEFAULT_CURRENCY = "MOVE"
DEFAULT_VERIFY_MAX_ATTEMPTS = 3
DEFAULT_VERIFY_RETRY_DELAY = 2.0
DEFAULT_INTENT_TTL_MINUTES = 30
DEFAULT_RPC_TIMEOUT = 10.0

VALID_STORAGE_BACKENDS = {"memory", "database"}

# MOVE uses 8 decimal places; amounts are always handled in the smallest unit
CURRENCY_DECIMALS = {"MOVE": 8}

# Configuration limits
MAX_CONFIG_STRING_LENGTH = 1000
MAX_CONFIG_VALUES = 20


def _validate_config_string(config_string: str, config_name: str) -> str:
    """Validate configuration string for type, length, and content."""
    if not isinstance(config_string, str):
        raise TypeError(f"{config_name} must be a string, got {type(config_string).__name__}")

    if len(config_string) > MAX_CONFIG_STRING_LENGTH:
        raise ValueError(f"{config_name} string too long ({len(config_string)} chars). Max: {MAX_CONFIG_STRING_LENGTH}")

    if any(char in config_string for char in ["\0", "\r", "\n", "\t"]):
        raise ValueError(f"{config_name} contains invalid characters")

    return config_string


def _normalize_config_list(config_string: str, valid_values: set[str], config_name: str) -> List[str]:
    """Normalize and validate a comma-separated configuration string."""
    if not config_string:
        return []

    config_string = _validate_config_string(config_string, config_name)

    values = [s.strip().lower() for s in config_string.split(",") if s.strip()]

    if len(values) > MAX_CONFIG_VALUES:
        raise ValueError(f"Too many {config_name} values ({len(values)}). Max: {MAX_CONFIG_VALUES}")

    invalid_values = [v for v in values if v not in valid_values]

    if invalid_values:
        raise ValueError(
            f"Invalid {config_name} values: {invalid_values}. " f"Valid values are: {', '.join(sorted(valid_values))}"
        )

    return values


def _get_enabled_storage() -> List[str]:
    """Get enabled storage backends from environment variables."""
    try:
        config_string = os.getenv(f"{ENV_PREFIX}EnabledStorage", DEFAULT_ENABLED_STORAGE)
        return _normalize_config_list(config_string, VALID_STORAGE_BACKENDS, "storage backends")
    except Exception as e:
        logger.error("Failed to parse storage configuration: %s. Using safe default.", e)
        return ["memory"]


def _get_string(name: str, default: str) -> str:
    try:
        return _validate_config_string(os.getenv(f"{ENV_PREFIX}{name}", default), name).strip()
    except (TypeError, ValueError) as e:
        logger.error("Invalid %s: %s. Using default.", name, e)
        return default


def _get_number(name: str, default, cast, minimum):
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.error("Invalid %s=%r, expected %s. Using default %s.", name, raw, cast.__name__, default)
        return default
    if value < minimum:
        logger.error("%s=%s is below the minimum %s. Using default %s.", name, value, minimum, default)
        return default
    return value


try:
    ENABLED_STORAGE = _get_enabled_storage()
    if not ENABLED_STORAGE:
        logger.warning("No storage backends enabled. Using memory storage as fallback.")
        ENABLED_STORAGE = ["memory"]
except Exception as e:
    logger.error("Critical configuration error: %s. Using safe defaults.", e)
    ENABLED_STORAGE = ["memory"]

RPC_URL = _get_string("RpcUrl", DEFAULT_RPC_URL).rstrip("/")
CHAIN_ID = _get_number("ChainId", DEFAULT_CHAIN_ID, int, 0)
CONTRACT_ADDRESS = _get_string("ContractAddress", DEFAULT_CONTRACT_ADDRESS)
CURRENCY = _get_string("Currency", DEFAULT_CURRENCY).upper()
VERIFY_MAX_ATTEMPTS = _get_number("VerifyMaxAttempts", DEFAULT_VERIFY_MAX_ATTEMPTS, int, 1)
VERIFY_RETRY_DELAY = _get_number("VerifyRetryDelay", DEFAULT_VERIFY_RETRY_DELAY, float, 0.0)
INTENT_TTL_MINUTES = _get_number("IntentTtlMinutes", DEFAULT_INTENT_TTL_MINUTES, int, 1)
RPC_TIMEOUT = _get_number("RpcTimeout", DEFAULT_RPC_TIMEOUT, float, 0.1)
ENVIRONMENT = _get_string("Environment", "development").lower()


def is_storage_enabled(storage_name: str) -> bool:
    """Check if a specific storage backend is enabled."""
    if not isinstance(storage_name, str):
        return False
    return storage_name.lower() in ENABLED_STORAGE


def get_config_summary() -> dict:
    """Get a summary of the current configuration."""
    return {
        "enabled_storage": ENABLED_STORAGE,
        "valid_storage_backends": sorted(VALID_STORAGE_BACKENDS),
        "rpc_url": RPC_URL,
        "chain_id": CHAIN_ID,
        "contract_address": CONTRACT_ADDRESS or None,
        "currency": CURRENCY,
        "verify_max_attempts": VERIFY_MAX_ATTEMPTS,
        "verify_retry_delay": VERIFY_RETRY_DELAY,
        "intent_ttl_minutes": INTENT_TTL_MINUTES,
        "rpc_timeout": RPC_TIMEOUT,
        "environment": ENVIRONMENT,
    }
