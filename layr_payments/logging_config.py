"""
Logging configuration for the Layr Payments package.

This module provides centralized logging configuration and utilities
for consistent logging across all package components.
"""

import logging
import logging.handlers
import os
import sys
import re
from pathlib import Path

VALID_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SHORT_FORMAT = "%(name)s - %(levelname)s - %(message)s"


class SecretRedactor(logging.Filter):
    """Redact signing keys and credentials from log records.

    Wallet addresses and transaction hashes are public on chain and are left intact
    so payment logs stay traceable.
    """

    SECRET_PATTERNS = [
        # Aptos / Movement account keys
        re.compile(r"(ed25519-priv-)(0x)?[a-fA-F0-9]{64}", re.IGNORECASE),
        re.compile(r"(private_?key[\"']?\s*[:=]\s*[\"']?)(0x)?[a-fA-F0-9]{64}", re.IGNORECASE),
        # Generic patterns
        re.compile(r"(key=)[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
        re.compile(r"(api_key=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(password=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(secret=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(token=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(Bearer )[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
        re.compile(r"(Authorization: )[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
    ]

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern in cls.SECRET_PATTERNS:
            text = pattern.sub(lambda m: m.group(1) + "***REDACTED***", text)
        return text

    def filter(self, record):
        """Redact sensitive data from log messages and arguments."""
        record.msg = self.redact(str(record.msg))
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.redact(str(v)) for k, v in record.args.items()}
            else:
                record.args = tuple(self.redact(str(arg)) for arg in record.args)
        return True


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log messages."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record):
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _validate_log_file_path(log_file: str) -> bool:
    """Validate log file path for writability and valid characters."""
    try:
        log_path = Path(log_file)
        if any(char in str(log_path) for char in '<>:"|?*'):
            return False
        parent = log_path.parent
        if parent.exists() and not os.access(parent, os.W_OK):
            return False
        return True
    except (OSError, ValueError):
        return False


def _ensure_secret_redactor_on_handlers() -> None:
    """Ensure SecretRedactor filter is applied to all existing root handlers."""
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SecretRedactor) for f in handler.filters):
            handler.addFilter(SecretRedactor())


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    log_format: str | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    use_colors: bool = True,
    include_timestamp: bool = True,
    clear_handlers: bool = False,
) -> None:
    """Set up logging configuration for the Layr Payments package."""
    if not isinstance(max_bytes, int) or max_bytes <= 0:
        max_bytes = 10 * 1024 * 1024
    if not isinstance(backup_count, int) or backup_count < 0:
        backup_count = 5

    level = level.upper()
    if level not in VALID_LEVELS:
        logging.warning("Invalid log level %s, defaulting to INFO", level)
        level = "INFO"
    log_level = getattr(logging, level)

    if log_format is None:
        log_format = DEFAULT_FORMAT if include_timestamp else SHORT_FORMAT

    env_use_colors = os.environ.get("LayrPayments_LogColors", "true").lower() == "true"
    use_colors = use_colors and env_use_colors and sys.stderr.isatty()
    console_formatter = ColoredFormatter(log_format) if use_colors else logging.Formatter(log_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if clear_handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(SecretRedactor())
    root_logger.addHandler(console_handler)

    if log_file:
        if not _validate_log_file_path(log_file):
            logging.error("Invalid log file path: %s", log_file)
            raise ValueError(f"Invalid log file path: {log_file}")
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        except OSError as e:
            logging.error("Failed to create rotating file handler for %s: %s", log_file, e)
            _ensure_secret_redactor_on_handlers()
            raise
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(log_format))
        file_handler.addFilter(SecretRedactor())
        root_logger.addHandler(file_handler)

    logging.getLogger("layr_payments").setLevel(log_level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    logging.info("Logging configured - Level: %s, File: %s, Colors: %s", level, log_file or "None", use_colors)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the specified name."""
    if not name or not isinstance(name, str) or not name.strip():
        raise ValueError("Logger name must be a non-empty string")
    return logging.getLogger(name)


def set_log_level(level: str, logger_name: str | None = None) -> None:
    """Set the log level for a specific logger or the root logger."""
    level = level.upper()
    if level not in VALID_LEVELS:
        logging.warning("Invalid log level %s, defaulting to INFO", level)
        level = "INFO"
    logging.getLogger(logger_name).setLevel(getattr(logging, level))


def log_performance(
    func_name: str,
    start_time: float,
    end_time: float,
    logger: logging.Logger | None = None,
    level: str = "DEBUG",
) -> None:
    """Log how long an operation took."""
    if logger is None:
        logger = logging.getLogger()
    if end_time < start_time:
        logger.warning("Invalid performance timing for %s, skipping", func_name)
        return
    log_level = getattr(logging, level.upper(), logging.DEBUG)
    logger.log(log_level, "Performance: %s took %.3f seconds", func_name, end_time - start_time)


def setup_default_logging() -> None:
    """Set up default logging from LayrPayments_* environment variables."""
    if logging.getLogger().handlers:
        _ensure_secret_redactor_on_handlers()
        return

    try:
        setup_logging(
            level=os.environ.get("LayrPayments_LogLevel", "INFO"),
            log_file=os.environ.get("LayrPayments_LogFile"),
            use_colors=os.environ.get("LayrPayments_LogColors", "true").lower() == "true",
        )
    except (OSError, ValueError) as e:
        setup_logging(level="INFO", log_file=None, use_colors=False, clear_handlers=True)
        logging.error("Failed to configure logging: %s. Using console logging.", e)
