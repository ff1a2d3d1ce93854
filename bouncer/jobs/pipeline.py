"""
Process wiring: one orchestrator, one scoring engine, one dispatcher,
built once at startup and shared by every handler.
"""

from collections.abc import Mapping
from dataclasses import dataclass

from bouncer.config import Settings, settings
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.jobs.ingest_jobs import IngestJobs
from bouncer.jobs.notification_jobs import NotificationJobs
from bouncer.jobs.scoring_jobs import ScoringJobs
from bouncer.middleware.rate_limiter import RateLimiter
from bouncer.notifications.channels import ChannelAdapter, default_adapters
from bouncer.notifications.dispatcher import NotificationDispatcher
from bouncer.notifications.models import Channel
from bouncer.notifications.preferences import PreferenceStore, RedisPreferenceStore
from bouncer.queues.models import QueueName
from bouncer.queues.orchestrator import QueueOrchestrator
from bouncer.queues.redis_store import RedisJobStore
from bouncer.queues.store import InMemoryJobStore, JobStore
from bouncer.repositories.event_repository import (
    EventRepository,
    InMemoryEventRepository,
    PostgresEventRepository,
)
from bouncer.scoring.engine import ScoringEngine
from bouncer.services.account_feature_source import (
    AccountFeatureSource,
    HttpAccountFeatureSource,
    StaticFeatureSource,
)
from bouncer.services.infrastructure.redis_client import redis_client

logger = get_logger(__name__)


def create_job_store(config: Settings) -> JobStore:
    if config.QUEUE_BACKEND == "memory":
        return InMemoryJobStore()
    return RedisJobStore(redis_client, prefix=config.QUEUE_PREFIX)


@dataclass
class Pipeline:
    config: Settings
    orchestrator: QueueOrchestrator
    engine: ScoringEngine
    events: EventRepository
    features: AccountFeatureSource
    dispatcher: NotificationDispatcher
    limiter: RateLimiter

    def handler_tables(self) -> dict[QueueName, dict]:
        ingest = IngestJobs(
            self.orchestrator, self.limiter.store, self.config.SCORING_PAIR_COOLDOWN_SECONDS
        )
        scoring = ScoringJobs(self.orchestrator, self.engine, self.events, self.features)
        notifications = NotificationJobs(self.orchestrator, self.dispatcher)
        return {
            QueueName.STREAM: ingest.stream_handlers(),
            QueueName.WEBHOOK: ingest.webhook_handlers(),
            QueueName.SCORING: scoring.handlers(),
            QueueName.NOTIFICATION: notifications.handlers(),
        }

    def start(self, queues: list[QueueName] | None = None) -> None:
        """Register workers for ``queues`` (all by default) and start the background loops."""
        tables = self.handler_tables()
        concurrency = self.config.queue_concurrency()
        for queue in queues or list(QueueName):
            self.orchestrator.register_handlers(queue, concurrency[queue.value], tables[queue])
        self.orchestrator.start_background_tasks()
        logger.info("Pipeline started", queues=[q.value for q in queues or QueueName])

    async def close(self, timeout: float | None = None) -> bool:
        return await self.orchestrator.close(timeout)


def build_pipeline(
    config: Settings | None = None,
    *,
    store: JobStore | None = None,
    events: EventRepository | None = None,
    features: AccountFeatureSource | None = None,
    preferences: PreferenceStore | None = None,
    adapters: Mapping[Channel, ChannelAdapter] | None = None,
    limiter: RateLimiter | None = None,
    delivery_store=None,
) -> Pipeline:
    """
    Build the pipeline from settings. Every collaborator can be overridden,
    which is how tests run it without Redis or Postgres.
    """
    config = config or settings
    limiter = limiter or RateLimiter(fail_open=config.RATE_LIMIT_FAIL_OPEN)

    if events is None:
        events = PostgresEventRepository() if config.DATABASE_URL else InMemoryEventRepository()
    if features is None:
        if config.FEATURE_SOURCE_URL:
            features = HttpAccountFeatureSource.from_settings()
        else:
            logger.warning("FEATURE_SOURCE_URL not set, using an empty static feature source")
            features = StaticFeatureSource()

    orchestrator = QueueOrchestrator.from_settings(store or create_job_store(config), config)
    dispatcher = NotificationDispatcher(
        preferences or RedisPreferenceStore(),
        adapters or default_adapters(),
        limiter=limiter,
        delivery_store=delivery_store,
        throttle_window_seconds=config.NOTIFICATION_THROTTLE_WINDOW_SECONDS,
        delivery_ttl_seconds=config.NOTIFICATION_DELIVERY_RECORD_TTL_SECONDS,
    )

    return Pipeline(
        config=config,
        orchestrator=orchestrator,
        engine=ScoringEngine.from_settings(config),
        events=events,
        features=features,
        dispatcher=dispatcher,
        limiter=limiter,
    )
