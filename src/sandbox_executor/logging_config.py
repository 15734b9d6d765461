"""
Structured logging configuration for sandbox-executor.

Library modules log through `structlog.get_logger(__name__)`; applications
call `configure_logging` once at startup.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(log_level: str = "INFO", *, json_output: bool = True) -> None:
    """Configure structlog on top of stdlib logging.

    Example:
        ```python
        configure_logging("DEBUG", json_output=False)
        ```
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
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


def get_logger(run_id: str | None = None, container: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a logger pre-bound with run context.

    Example:
        ```python
        log = get_logger(run_id="1a2b3c4d5e6f")
        ```
    """
    context: dict[str, str] = {}
    if run_id:
        context["run_id"] = run_id
    if container:
        context["container"] = container
    return structlog.get_logger(**context)
