"""
Logging configuration using structlog.

Engine components log through ``structlog.get_logger(__name__)`` with
snake_case event names and keyword context. Workflow runs bind
``workflow_id`` and ``project_path`` via structlog contextvars, which the
``merge_contextvars`` processor folds into every line emitted by the run.
"""

import logging
import sys
from typing import Any, Literal

import structlog

LogFormat = Literal["json", "console"]


def configure_logging(log_level: str = "INFO", log_format: LogFormat = "json") -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` for machine-readable lines, ``console`` for
            colourless key=value output when running the CLI interactively
    """
    renderer: Any
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_workflow(workflow_id: str, project_path: str) -> Any:
    """Context manager tagging every log line of a workflow run.

    Example:
        >>> with bind_workflow("wf-1", "/srv/repos/webapp"):
        ...     log.info("branch_created", branch="fix/login-101-1704067200000")
    """
    return structlog.contextvars.bound_contextvars(workflow_id=workflow_id, project_path=project_path)
