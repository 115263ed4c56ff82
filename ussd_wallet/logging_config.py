"""
Structured logging for the wallet using structlog.

Every log line is an event name plus keyword context. Phone numbers are
logged masked; credential-bearing keys are replaced before rendering.
"""

import logging
import sys
from typing import Any

import structlog

from ussd_wallet.config import settings

# Event keys whose values must never reach the log output
REDACTED_KEYS = frozenset({
    "otp_code",
    "token",
    "authorization",
    "api_key",
    "auth_token",
    "webhook_secret",
})

# Client libraries that log full request URLs at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "twilio.http_client")


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: blank out credential-bearing keys."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog and the standard library root logger.

    Context bound with structlog.contextvars is merged into every event
    emitted while handling a request.

    Args:
        level: Log level name (defaults to settings.log_level)
        log_format: "json" or "console" (defaults to settings.log_format)
    """
    level_name = (level or settings.log_level).upper()
    if (log_format or settings.log_format) == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_level = getattr(logging, level_name)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=root_level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger for a module.

    Example:
        logger = get_logger(__name__)
        logger.info("transfer_completed", transaction_id=str(tx.id), amount="40")
    """
    return structlog.get_logger(name)


def mask_phone(phone_number: str | None) -> str:
    """Mask a phone number down to its last 4 digits."""
    if not phone_number:
        return ""
    return f"***{phone_number[-4:]}"
