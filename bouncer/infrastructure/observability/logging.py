"""
structlog configuration for the API and worker processes.

One JSON object per line on stdout, stamped with level, logger name, ISO time
and the service name.
"""

import logging
import sys
from datetime import datetime
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "psycopg.pool")


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog and the stdlib root handler. Safe to call twice."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _add_service_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", "bouncer")
    return event_dict


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Queue lifecycle events share one logger and one set of field names
def log_job_added(queue: str, job_type: str, job_id: str, delay_ms: int = 0):
    get_logger("queue").info(
        "Job added to queue", queue=queue, job_type=job_type, job_id=job_id, delay_ms=delay_ms
    )


def log_job_processing(queue: str, job_type: str, job_id: str, attempt: int):
    get_logger("queue").info(
        "Job processing started", queue=queue, job_type=job_type, job_id=job_id, attempt=attempt
    )


def log_job_completed(queue: str, job_type: str, job_id: str, duration_ms: float):
    get_logger("queue").info(
        "Job completed successfully",
        queue=queue,
        job_type=job_type,
        job_id=job_id,
        duration_ms=round(duration_ms, 2),
    )


def log_job_failed(queue: str, job_type: str, job_id: str, error: str, attempt: int):
    get_logger("queue").error(
        "Job failed", queue=queue, job_type=job_type, job_id=job_id, error=error, attempt=attempt
    )


def log_job_retry(queue: str, job_type: str, job_id: str, next_run_at: datetime):
    get_logger("queue").info(
        "Job scheduled for retry",
        queue=queue,
        job_type=job_type,
        job_id=job_id,
        next_run_at=next_run_at.isoformat(),
    )


def log_job_dead(queue: str, job_type: str, job_id: str, error: str, attempts: int):
    get_logger("queue").error(
        "Job moved to dead-letter",
        queue=queue,
        job_type=job_type,
        job_id=job_id,
        error=error,
        attempts=attempts,
    )


def log_queue_depth(queue: str, stats: dict[str, Any]):
    get_logger("queue").info("Queue depth", queue=queue, event_type="queue_depth", **stats)
