"""Logging setup using structlog.

Goal:
- Structured logs for every contract lifecycle event and feed reconnect.
- Consistent context fields (component, contract_id, symbol, etc.).
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", *, json_logs: bool = True) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # websockets logs every frame at DEBUG; keep it quieter than our own components
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


def bind_session(**kwargs: Any) -> None:
    """Attach fields (e.g. session, price_source) to every log line in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_session() -> None:
    structlog.contextvars.clear_contextvars()
