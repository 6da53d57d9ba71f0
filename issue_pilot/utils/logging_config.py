"""
Logging configuration using structlog for structured, JSON-based logging.

Every engine module logs through ``structlog.get_logger(__name__)`` with
snake_case event names and keyword context (``execution_id``, ``phase``,
``worker_id``). This module configures the shared processor pipeline once
at startup.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines; otherwise use the console renderer
            for an operator's terminal
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_execution(execution_id: str, **context: Any) -> None:
    """Bind an execution id to every log line of the current task.

    Each execution's driver runs in its own asyncio task, so the binding
    does not leak between executions.
    """
    structlog.contextvars.bind_contextvars(execution_id=execution_id, **context)
