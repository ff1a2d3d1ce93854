"""
Notification queue handlers.

Every job type sends through the dispatcher; the job type only has to agree
with the channel in the payload. Quiet-hours deferrals are re-enqueued with
the remaining delay, and the dispatcher's retryable flag decides between
retry and dead-letter.
"""

from typing import Any

from bouncer.errors import PermanentRejectionError, TransientUpstreamError, ValidationError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.notifications.dispatcher import NotificationDispatcher
from bouncer.notifications.models import CHANNEL_JOB_TYPES, NotificationJob
from bouncer.queues.models import Job, JobOptions, NotificationJobType, QueueName
from bouncer.queues.orchestrator import QueueOrchestrator

logger = get_logger(__name__)


class NotificationJobs:
    def __init__(self, orchestrator: QueueOrchestrator, dispatcher: NotificationDispatcher):
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher

    async def send(self, job: Job) -> dict[str, Any]:
        notification = NotificationJob.from_dict(job.payload, origin_id=job.id)
        if CHANNEL_JOB_TYPES[notification.channel] != job.job_type:
            raise ValidationError(
                f"Job type {job.job_type} does not match channel {notification.channel}",
                details={"job_id": job.id},
            )
        notification.retry_count = job.attempts

        result = await self.dispatcher.dispatch(notification)

        if result.deferred:
            deferred_id = await self.orchestrator.enqueue(
                QueueName.NOTIFICATION,
                job.job_type,
                notification.to_dict(),
                JobOptions(delay_ms=int(result.deferred_seconds * 1000), priority=job.priority),
            )
            logger.info(
                "Notification re-enqueued after quiet hours",
                job_id=job.id,
                deferred_job_id=deferred_id,
                deferred_seconds=round(result.deferred_seconds),
            )
            return {**result.to_dict(), "deferred_job_id": deferred_id}

        if result.success or result.dropped:
            return result.to_dict()

        if result.retryable:
            raise TransientUpstreamError(
                result.error or "Notification delivery failed",
                details={"delivery_id": notification.delivery_id},
            )
        raise PermanentRejectionError(
            result.error or "Notification rejected",
            details={"delivery_id": notification.delivery_id},
        )

    def handlers(self) -> dict[NotificationJobType, Any]:
        return {job_type: self.send for job_type in NotificationJobType}
