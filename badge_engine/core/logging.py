"""
Structured logging configuration using structlog.

Console output in development, one JSON object per line elsewhere. Logs go
to stderr so command-line tools can keep stdout for their own JSON reports.
"""

import logging
import sys
from typing import cast

import structlog
from structlog.types import EventDict, Processor

from badge_engine.core.config import Settings, get_settings

# Event keys that must never reach a log sink.
_REDACTED_KEYS: frozenset[str] = frozenset(
    {"private_key", "encrypted_private_key", "master_key", "seed"}
)


def _redact_key_material(
    _logger: object, _method: str, event_dict: EventDict
) -> EventDict:
    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def _renderers(settings: Settings) -> list[Processor]:
    if settings.environment == "development":
        return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger for the engine.

    Safe to call more than once; the last call wins.
    """
    settings = settings or get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _redact_key_material,
        *_renderers(settings),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
        force=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger bound to ``name``."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
