"""
Queue worker process.

Reads the queues to serve from CLI args or the WORKER_QUEUES environment
variable (comma separated, default "all"), builds the pipeline and runs until
SIGINT/SIGTERM.
"""

import asyncio
import os
import signal
import sys

from bouncer.config import settings, validate_startup_config
from bouncer.db.pool import db_pool
from bouncer.errors import ConfigurationError
from bouncer.infrastructure.observability.logging import get_logger, setup_logging
from bouncer.jobs.pipeline import build_pipeline
from bouncer.queues.models import QueueName
from bouncer.repositories.event_repository import PostgresEventRepository
from bouncer.services.infrastructure.redis_client import redis_client

logger = get_logger(__name__)


def _resolve_queue_names(argv: list[str] | None = None) -> list[QueueName]:
    """Pick the target queues from CLI args or the WORKER_QUEUES env variable."""
    argv = sys.argv[1:] if argv is None else argv
    raw = ",".join(argv) if argv else os.getenv("WORKER_QUEUES", "all")
    names = [part.strip().lower() for part in raw.split(",") if part.strip()]

    if not names or "all" in names:
        return list(QueueName)

    queues = []
    for name in names:
        try:
            queues.append(QueueName(name))
        except ValueError:
            raise ConfigurationError(
                f"Unknown queue '{name}'. Available queues: {', '.join(q.value for q in QueueName)}"
            ) from None
    return queues


async def run_worker(queues: list[QueueName] | None = None, stop: asyncio.Event | None = None) -> bool:
    """
    Serve ``queues`` until ``stop`` is set. Returns True if shutdown was forced.
    """
    queues = queues or _resolve_queue_names()
    stop = stop or asyncio.Event()
    validate_startup_config(settings)

    if settings.QUEUE_BACKEND == "redis" or settings.RATE_LIMIT_ENABLED:
        await redis_client.initialize()
    if settings.DATABASE_URL:
        await db_pool.initialize()

    pipeline = build_pipeline(settings)
    if isinstance(pipeline.events, PostgresEventRepository):
        await pipeline.events.ensure_schema()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Not supported on this platform; rely on KeyboardInterrupt
            break

    logger.info("Starting queue worker", queues=[q.value for q in queues])
    pipeline.start(queues)

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down queue worker")
        forced = await pipeline.close()
        await db_pool.close()
        await redis_client.close()

    return forced


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    queues = _resolve_queue_names()
    forced = asyncio.run(run_worker(queues))
    if forced:
        sys.exit(1)


if __name__ == "__main__":
    main()
