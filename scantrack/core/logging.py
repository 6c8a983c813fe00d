"""Logging setup for the API, the reconciler loop and the CLI.

Everything goes to stdout through structlog: JSON lines normally, coloured
console lines when ``APP_DEBUG`` is on. Records from uvicorn, SQLAlchemy and
httpx are routed to the same stream. httpx and the SQLAlchemy engine log one
line per request or statement, which on every reconcile pass drowns the scan
events, so they are held at WARNING unless the configured level is DEBUG.
"""

import logging
import sys
from typing import Any

import structlog

from scantrack.core.config import Settings, get_settings

# Event keys whose values are masked before rendering
SENSITIVE_KEYS = frozenset(
    {"token", "gitlab_token", "private_token", "webhook_secret", "authorization", "password"}
)

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

_configured = False


def redact_sensitive(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _renderers(debug: bool) -> list[structlog.types.Processor]:
    if debug:
        return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger from ``settings``."""
    global _configured
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            redact_sensitive,
            *_renderers(settings.app_debug),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        # add_logger_name needs stdlib loggers
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    library_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    _configured = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)
