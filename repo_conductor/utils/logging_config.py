"""
Logging configuration using structlog for structured logging.

The CLI calls ``configure_logging`` once at startup. Library modules only
ever do ``log = structlog.get_logger(__name__)`` and log snake_case event
names with key/value context such as ``run_id`` or ``path``. Log lines go to
stderr so command output on stdout stays machine-readable.
"""

import sys
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors that add log levels,
    timestamps, stack traces and bound context variables.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines (default) or human-readable console
            output for interactive use
    """
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
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
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def bind_run_context(run_id: str, **values: Any) -> None:
    """Bind a run id (and extra values) to every log line in this task.

    Example:
        >>> bind_run_context("a1b2c3", workflow="implement")
        >>> log.info("phase_started", phase="design")  # includes run_id
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, **values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()
