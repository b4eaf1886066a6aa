"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
from typing import Any

import structlog


_CONFIGURED = False


def _log_level() -> int:
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)


def _add_default_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    del logger, method_name
    event_dict.setdefault("account_id", None)
    event_dict.setdefault("job_id", None)
    return event_dict


def configure_logging() -> None:
    """Initialize structlog once for JSON-formatted logs."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    level = _log_level()
    logging.basicConfig(level=level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_default_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(default=str),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_job_context(job_id: int, account_id: str | None = None) -> None:
    structlog.contextvars.bind_contextvars(job_id=job_id, account_id=account_id)


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()
