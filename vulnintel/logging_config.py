"""Structured logging setup for vulnintel.

``configure_logging`` sets up *structlog* with a JSON pipeline (or a
console renderer when ``LOG_PRETTY`` is truthy) and bridges stdlib logging
through the same processors, so aiohttp/openai warnings land in the same
stream as our own events.

Library modules only call :pyfunc:`structlog.get_logger` and never
reconfigure; entry points (the CLI, tests) may call
:pyfunc:`configure_logging` with ``force=True``.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

import structlog

__all__ = [
    "configure_logging",
    "bind_request_context",
    "clear_request_context",
]


def configure_logging(force: bool = False, level: Optional[str] = None) -> None:
    """Setup structlog + stdlib bridging exactly once.

    Args:
        force: Reconfigure even if already configured (CLI ``--verbose``,
               isolated tests).
        level: Explicit level name; defaults to ``LOG_LEVEL`` (INFO).
    """

    configured = getattr(structlog, "_vulnintel_configured", False)
    if configured and not force:
        return

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    pretty = os.getenv("LOG_PRETTY", "0").lower() in {"1", "true", "yes"}
    if pretty:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # stdlib records (aiohttp, openai) get the same fields as structlog events
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # aiohttp access/client chatter is noisy at INFO
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    setattr(structlog, "_vulnintel_configured", True)


def bind_request_context(
    request_id: Optional[str] = None,
    cve_id: Optional[str] = None,
) -> None:
    """Bind correlation ids into structlog contextvars.

    Only the provided keys are updated.
    """
    payload: Dict[str, str] = {}
    if request_id:
        payload["request_id"] = request_id
    if cve_id:
        payload["cve_id"] = cve_id
    if payload:
        structlog.contextvars.bind_contextvars(**payload)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
