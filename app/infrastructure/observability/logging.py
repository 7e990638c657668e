"""
Structured logging setup for the ingestion workers.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # Job context bound by the runner (job_id, kind, worker_id, user_id)
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


@contextmanager
def bound_job_context(**fields: Any) -> Iterator[None]:
    """Bind job fields to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def log_job_transition(
    job_id: str,
    kind: str,
    from_status: str,
    to_status: str,
    attempts: int,
    error: str = None,
):
    """Log a job state change with consistent fields."""
    logger = get_logger("jobs")

    log_data = {
        "job_id": job_id,
        "kind": kind,
        "from_status": from_status,
        "to_status": to_status,
        "attempts": attempts,
        "event_type": "job_transition",
    }

    if error:
        log_data["error"] = error

    if to_status == "failed":
        logger.error("Job failed permanently", **log_data)
    elif error:
        logger.warning("Job attempt failed", **log_data)
    else:
        logger.info("Job transitioned", **log_data)
