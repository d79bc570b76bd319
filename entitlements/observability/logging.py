"""
Structured Logging with Structlog.

Every entry carries the service name and version; reconciliation runs bind
account_id and trigger through log_context so nested calls inherit them.
Purchase tokens are credentials for the Android Publisher API and are
shortened before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from entitlements.config import settings

TOKEN_FIELDS = frozenset({"purchase_token", "token"})
TOKEN_VISIBLE_CHARS = 8

# Chatty third-party loggers that only matter when debugging
QUIET_LOGGERS = ("googleapiclient.discovery_cache", "googleapiclient.discovery", "asyncio")


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_purchase_tokens(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep only a short prefix of any purchase token in the entry."""
    for field in TOKEN_FIELDS & event_dict.keys():
        value = event_dict[field]
        if isinstance(value, str) and len(value) > TOKEN_VISIBLE_CHARS:
            event_dict[field] = f"{value[:TOKEN_VISIBLE_CHARS]}..."
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of the stdlib root logger.

    LOG_FORMAT=json renders one JSON object per line, e.g.
    {"event": "entitlement_verdict_published", "level": "info",
     "logger": "entitlements.services.reconciliation", "account_id": "user-123",
     "trigger": "refresh", "source": "provider", ...}

    LOG_FORMAT=console renders colored key/value lines for local runs.
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_purchase_tokens,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured context for the duration of a block.

    Usage:
        with log_context(account_id="user-123", trigger="refresh"):
            logger.info("reconciliation_started")

    Values bound by an enclosing block are restored on exit.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> None:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
