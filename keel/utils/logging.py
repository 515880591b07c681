"""
Structured logging for keel.

Every module obtains its logger through ``get_logger(__name__)`` and logs
snake_case event names with keyword context:

    logger.info("compaction_applied", strategy="llm", tokens_before=123)
"""

import logging
import sys
from typing import Any

import structlog

SENSITIVE_KEYS = ("api_key", "apikey", "password", "secret", "authorization", "access_token")

# Token *counts* must stay visible in logs
_TOKEN_COUNT_KEYS = (
    "tokens",
    "total_tokens",
    "input_tokens",
    "output_tokens",
    "prompt_tokens",
    "completion_tokens",
    "used_tokens",
    "tokens_before",
    "tokens_after",
    "reserve_tokens",
    "keep_recent_tokens",
)

REDACTED = "***REDACTED***"

_configured = False


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in _TOKEN_COUNT_KEYS or lowered.endswith("_tokens"):
        return False
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def filter_sensitive_data(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor that redacts credentials from the event dict."""
    for key in list(event_dict.keys()):
        if _is_sensitive(key):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root handler.

    Args:
        level: Log level name. Defaults to ``settings.log_level``
            (``DEBUG`` when ``settings.debug`` is set).
        json_output: Render events as JSON lines instead of console output.
            Defaults to ``settings.log_json``.
    """
    global _configured

    from keel.config.settings import settings

    if level is None:
        level = "DEBUG" if settings.debug else settings.log_level
    if json_output is None:
        json_output = settings.log_json

    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_sensitive_data,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)


__all__ = ["configure_logging", "filter_sensitive_data", "get_logger"]
