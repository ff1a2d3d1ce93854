"""
Scoring queue handlers.

Event ids are derived from the job id, so a retried job overwrites nothing
and produces the same notification delivery ids.
"""

from dataclasses import replace
from typing import Any

from bouncer.errors import ValidationError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.notifications.models import (
    PRIORITY_RANK,
    Channel,
    NotificationJob,
    Priority,
    calculate_notification_priority,
)
from bouncer.queues.models import Job, JobOptions, QueueName, ScoringJobType
from bouncer.queues.orchestrator import QueueOrchestrator
from bouncer.repositories.event_repository import EventRepository
from bouncer.scoring.engine import ACTION_RANK, Action, DetectionEvent, ScoringEngine
from bouncer.scoring.features import AccountFeatures
from bouncer.services.account_feature_source import AccountFeatureSource

logger = get_logger(__name__)


def _require(payload: dict[str, Any], key: str, job: Job) -> str:
    value = payload.get(key)
    if not value:
        raise ValidationError(f"Scoring job needs '{key}'", details={"job_id": job.id})
    return str(value)


def build_notification(
    event: DetectionEvent,
    suspect: AccountFeatures,
    target: AccountFeatures,
    recipient: str,
    channel: Channel = Channel.EMAIL,
) -> NotificationJob:
    priority = calculate_notification_priority(event.score, event.confidence)
    template_id = (
        "high_confidence_alert"
        if PRIORITY_RANK[priority] >= PRIORITY_RANK[Priority.HIGH]
        else "impersonation_detected"
    )
    return NotificationJob(
        recipient=recipient,
        channel=channel,
        priority=priority,
        template_id=template_id,
        event_id=event.id,
        data={
            "event_id": event.id,
            "action": event.action.value,
            "suspect_username": suspect.username,
            "target_username": target.username,
            "score": round(event.score, 2),
            "confidence": round(event.confidence * 100),
            "reasoning": event.reasoning,
        },
    )


class ScoringJobs:
    def __init__(
        self,
        orchestrator: QueueOrchestrator,
        engine: ScoringEngine,
        events: EventRepository,
        features: AccountFeatureSource,
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.events = events
        self.features = features

    async def _fetch_pair(self, job: Job) -> tuple[AccountFeatures, AccountFeatures]:
        suspect_id = _require(job.payload, "suspect_account_id", job)
        target_id = _require(job.payload, "target_account_id", job)
        suspect = await self.features.fetch_features(suspect_id)
        target = await self.features.fetch_features(target_id)
        return suspect, target

    def _score(self, job: Job, suspect: AccountFeatures, target: AccountFeatures) -> DetectionEvent:
        event = self.engine.score(suspect, target)
        return replace(event, id=f"evt_{job.id.replace(':', '_')}")

    @staticmethod
    def _notify_route(job: Job) -> tuple[str | None, Channel]:
        """Recipient override and channel from ``notify``. Checked before any work is saved."""
        notify = job.payload.get("notify") or {}
        if not isinstance(notify, dict):
            raise ValidationError("notify must be an object", details={"job_id": job.id})
        try:
            channel = Channel(notify.get("channel") or Channel.EMAIL)
        except ValueError:
            raise ValidationError(
                f"Unknown notification channel: {notify.get('channel')}",
                details={"job_id": job.id, "allowed": [c.value for c in Channel]},
            ) from None
        return notify.get("recipient"), channel

    async def _notify(
        self,
        job: Job,
        route: tuple[str | None, Channel],
        event: DetectionEvent,
        suspect: AccountFeatures,
        target: AccountFeatures,
    ) -> str:
        override, channel = route
        recipient = override or job.payload.get("owner_id") or target.account_id

        notification = build_notification(event, suspect, target, recipient, channel)
        queue_priority = len(PRIORITY_RANK) - 1 - PRIORITY_RANK[notification.priority]
        return await self.orchestrator.enqueue(
            QueueName.NOTIFICATION,
            notification.job_type,
            notification.to_dict(),
            JobOptions(priority=queue_priority),
        )

    async def analyze_account(self, job: Job) -> dict[str, Any]:
        route = self._notify_route(job)
        suspect, target = await self._fetch_pair(job)
        event = self._score(job, suspect, target)
        await self.events.save(event)

        result = {"event_id": event.id, "score": event.score, "action": event.action.value}
        if event.alerting:
            result["notification_job_id"] = await self._notify(job, route, event, suspect, target)

        logger.info(
            "Account analyzed",
            suspect_account_id=suspect.account_id,
            target_account_id=target.account_id,
            score=round(event.score, 4),
            action=event.action.value,
        )
        return result

    async def extract_features(self, job: Job) -> dict[str, Any]:
        suspect, target = await self._fetch_pair(job)
        return {"suspect": suspect.to_dict(), "target": target.to_dict()}

    async def calculate_score(self, job: Job) -> dict[str, Any]:
        suspect_data = job.payload.get("suspect")
        target_data = job.payload.get("target")
        if not isinstance(suspect_data, dict) or not isinstance(target_data, dict):
            raise ValidationError(
                "calculate_score needs 'suspect' and 'target' feature objects",
                details={"job_id": job.id},
            )
        event = self._score(
            job, AccountFeatures.from_dict(suspect_data), AccountFeatures.from_dict(target_data)
        )
        return event.to_dict()

    async def update_score(self, job: Job) -> dict[str, Any]:
        route = self._notify_route(job)
        suspect, target = await self._fetch_pair(job)
        previous = await self.events.latest_for_pair(suspect.account_id, target.account_id)
        event = self._score(job, suspect, target)
        await self.events.save(event)

        previous_action = previous.action if previous else Action.IGNORE
        escalated = ACTION_RANK[event.action] > ACTION_RANK[previous_action]
        result = {
            "event_id": event.id,
            "score": event.score,
            "action": event.action.value,
            "previous_action": previous_action.value,
            "escalated": escalated,
        }
        if escalated and event.alerting:
            result["notification_job_id"] = await self._notify(job, route, event, suspect, target)
        return result

    def handlers(self) -> dict[ScoringJobType, Any]:
        return {
            ScoringJobType.ANALYZE_ACCOUNT: self.analyze_account,
            ScoringJobType.EXTRACT_FEATURES: self.extract_features,
            ScoringJobType.CALCULATE_SCORE: self.calculate_score,
            ScoringJobType.UPDATE_SCORE: self.update_score,
        }
