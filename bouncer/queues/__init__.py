from bouncer.queues.models import (
    JOB_TYPES,
    Job,
    JobOptions,
    JobStatus,
    NotificationJobType,
    QueueName,
    QueueStats,
    ScoringJobType,
    StreamJobType,
    WebhookJobType,
)
from bouncer.queues.orchestrator import QueueMetrics, QueueOrchestrator
from bouncer.queues.store import InMemoryJobStore, JobStore

__all__ = [
    "JOB_TYPES",
    "InMemoryJobStore",
    "Job",
    "JobOptions",
    "JobStatus",
    "JobStore",
    "NotificationJobType",
    "QueueMetrics",
    "QueueName",
    "QueueOrchestrator",
    "QueueStats",
    "ScoringJobType",
    "StreamJobType",
    "WebhookJobType",
]
