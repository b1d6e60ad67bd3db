# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Structured logging configuration for the auditbond host.

Call configure_logging() once at startup. Modules log through
structlog.get_logger(__name__) with key/value context:

    log.info("audit_assigned", audit_id=3, worker="acct_...")

Request-scoped context (caller, path) is bound with structlog.contextvars
by the HTTP host and merged into every entry.
"""

import logging
import os

import structlog
from structlog.typing import Processor

LOG_LEVEL_ENV = "AUDIT_LOG_LEVEL"
LOG_JSON_ENV = "AUDIT_LOG_JSON"
DEFAULT_LOG_LEVEL = "INFO"


def _level_from_name(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def configure_logging(level: str | None = None, json: bool | None = None) -> None:
    """Configure structlog processors and the level filter.

    level defaults to $AUDIT_LOG_LEVEL (INFO). json selects the JSON renderer
    for log aggregation; otherwise output goes through the console renderer.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL)
    if json is None:
        json = os.environ.get(LOG_JSON_ENV, "").lower() in ("1", "true", "yes")

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level_from_name(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(**kwargs) -> None:
    """Bind context to every log entry for the current request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**kwargs)
