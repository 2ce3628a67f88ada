"""
Logging configuration using structlog for structured, JSON-based logging.

This module provides centralized logging setup for the orchestration engine,
with support for contextual logging and structured output. Workflow-scoped
code binds ``workflow_id`` through :func:`workflow_context` so that every
event emitted while a workflow runs carries it.
"""

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors for rich, structured logs
    that include timestamps, log levels, stack traces, and contextual information.
    Events go to stderr so that command output on stdout stays parseable.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, human-friendly console
            output otherwise
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
        cache_logger_on_first_use=True,
    )


@contextmanager
def workflow_context(workflow_id: int, **extra: Any) -> Iterator[None]:
    """Bind ``workflow_id`` (and any extra keys) to all log events in scope."""
    with structlog.contextvars.bound_contextvars(workflow_id=workflow_id, **extra):
        yield
