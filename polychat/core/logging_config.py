"""
Logging configuration for Polychat API.

Besides the console and the application log, billing services also write
to a separate audit log. Every handler masks Stripe secrets and bearer
tokens before a line is written.
"""
import logging
import re
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

# Loggers whose records also go to billing_audit.log
AUDIT_LOGGERS = (
    "polychat.services.subscription_service",
    "polychat.services.webhook_service",
    "polychat.services.credit_ledger",
    "polychat.services.stripe_service",
)

SENSITIVE_KEYS = (
    "password", "token", "secret", "api_key", "signature",
    "stripe_secret_key", "stripe_webhook_secret",
)

REDACTED = "***REDACTED***"

_SECRET_PATTERNS = (
    re.compile(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-_.=]+"),
)

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def mask_secrets(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Rewrites a record's message with Stripe keys and bearer tokens masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _rotating_handler(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)  # 10MB
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SecretRedactionFilter())
    return handler


def setup_logging(log_level: str = "INFO", log_dir: str = "logs", audit: bool = True):
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for polychat.log and billing_audit.log
        audit: Also write billing records to billing_audit.log
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    console_handler.addFilter(SecretRedactionFilter())

    root.addHandler(console_handler)
    root.addHandler(_rotating_handler(log_path / "polychat.log", level))

    if audit:
        # Billing records are kept at INFO even when the app runs quieter
        audit_handler = _rotating_handler(log_path / "billing_audit.log", logging.INFO)
        audit_handler.set_name("polychat_audit")
        for name in AUDIT_LOGGERS:
            audit_logger = logging.getLogger(name)
            audit_logger.handlers = [h for h in audit_logger.handlers if h.get_name() != "polychat_audit"]
            audit_logger.addHandler(audit_handler)
            audit_logger.setLevel(min(level, logging.INFO))

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def _sanitize_value(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return sanitize_log_data(value)
    if key.lower().endswith("database_url") and isinstance(value, str):
        try:
            return make_url(value).render_as_string(hide_password=True)
        except ArgumentError:
            return REDACTED
    if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
        return REDACTED
    if isinstance(value, str):
        return mask_secrets(value)
    return value


def sanitize_log_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy of `data` that is safe to log.

    Secret-named keys are redacted and database URLs lose only their password.
    Nested dicts are sanitized recursively.
    """
    return {key: _sanitize_value(key, value) for key, value in data.items()}
