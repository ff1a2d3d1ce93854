# bouncer/main.py
"""
HTTP edge: health checks and event ingestion. With the Redis queue backend
this is a producer only and the workers run in the ``bouncer-worker``
process; the in-memory backend runs its workers here.
"""

import time
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request

from bouncer import __version__
from bouncer.config import settings, validate_startup_config
from bouncer.db.pool import db_pool
from bouncer.infrastructure.observability.logging import get_logger, setup_logging
from bouncer.jobs.pipeline import build_pipeline
from bouncer.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from bouncer.routes import health, ingest
from bouncer.services.infrastructure.redis_client import redis_client

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_startup_config(settings)
    logger.info("API starting", environment=settings.environment, queue_backend=settings.QUEUE_BACKEND)

    async with AsyncExitStack() as resources:
        opened = []
        try:
            if settings.QUEUE_BACKEND == "redis" or settings.RATE_LIMIT_ENABLED:
                await redis_client.initialize()
                resources.push_async_callback(redis_client.close)
                opened.append("redis")

            if settings.DATABASE_URL:
                await db_pool.initialize()
                resources.push_async_callback(db_pool.close)
                opened.append("postgres")

            pipeline = build_pipeline(settings)
            resources.push_async_callback(pipeline.close)
            if settings.QUEUE_BACKEND == "memory":
                # No other process can read this store, so the API drains it itself
                logger.warning("In-memory queue backend, running workers inside the API process")
                pipeline.start()
        except Exception as e:
            logger.error("API startup aborted", error=str(e), opened=opened)
            raise

        app.state.pipeline = pipeline
        logger.info("API ready", connections=opened)
        yield
        logger.info("API stopping")


app = FastAPI(
    title="Bouncer",
    description="Impersonation detection pipeline",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(RateLimitHeadersMiddleware)
app.include_router(health.router)
app.include_router(ingest.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "Request served",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


def run() -> None:
    """Console entrypoint for ``bouncer-api``."""
    import uvicorn

    uvicorn.run("bouncer.main:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    run()
