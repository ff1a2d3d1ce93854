"""
Webhook and stream event handlers.

Each handler finds the (suspect, target) pair in an inbound event and
enqueues a scoring job for it. Events from the protected account itself are
skipped, and a per-pair cooldown stops bursts from one suspect re-scoring the
same pair.

Payload shape::

    {"target_account_id": "...", "owner_id": "...", "event": {...}}
"""

from typing import Any

from bouncer.errors import ValidationError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.queues.models import (
    Job,
    JobOptions,
    QueueName,
    ScoringJobType,
    StreamJobType,
    WebhookJobType,
)
from bouncer.queues.orchestrator import QueueOrchestrator

logger = get_logger(__name__)

# Queue priority for scoring jobs, lower runs first
DEFAULT_PRIORITY = 5
DM_PRIORITY = 1

# Event field holding the suspect account for each job type
SUSPECT_FIELDS: dict[str, str] = {
    WebhookJobType.PROCESS_MENTION: "author_id",
    WebhookJobType.PROCESS_REPLY: "author_id",
    WebhookJobType.PROCESS_DM: "sender_id",
    WebhookJobType.PROCESS_FOLLOW: "follower_id",
    StreamJobType.PROCESS_TWEET: "author_id",
    StreamJobType.PROCESS_USER_UPDATE: "account_id",
    StreamJobType.PROCESS_FOLLOW_EVENT: "follower_id",
}


def extract_pair(job: Job) -> tuple[str, str]:
    payload = job.payload
    event = payload.get("event")
    if not isinstance(event, dict):
        raise ValidationError("Event payload must contain an 'event' object", details={"job_id": job.id})

    target = payload.get("target_account_id")
    suspect = event.get(SUSPECT_FIELDS[job.job_type])
    if not target or not suspect:
        raise ValidationError(
            "Event is missing the suspect or target account",
            details={"job_id": job.id, "job_type": job.job_type},
        )
    return str(suspect), str(target)


class IngestJobs:
    COOLDOWN_PREFIX = "cooldown:pair"

    def __init__(self, orchestrator: QueueOrchestrator, kv, pair_cooldown_seconds: int):
        """
        ``kv`` needs ``set_if_absent`` and ``get``; the shared Redis client in
        production.
        """
        self.orchestrator = orchestrator
        self.kv = kv
        self.pair_cooldown_seconds = pair_cooldown_seconds

    async def _hold_pair(self, job: Job, suspect: str, target: str) -> bool:
        """
        Take the pair cooldown for ``job``. The key holds the ingest job id, so
        a retry of the same job (say after a failed enqueue) still gets through
        while other events for the pair are skipped until the key expires.
        """
        key = f"{self.COOLDOWN_PREFIX}:{suspect}:{target}"
        if await self.kv.set_if_absent(key, job.id, ttl_s=self.pair_cooldown_seconds):
            return True
        holder = await self.kv.get(key)
        # None: expired in between, or the store is down (fail open)
        return holder is None or holder == job.id

    async def _route(
        self,
        job: Job,
        scoring_type: ScoringJobType = ScoringJobType.ANALYZE_ACCOUNT,
        priority: int = DEFAULT_PRIORITY,
        cooldown: bool = True,
    ) -> dict[str, Any]:
        suspect, target = extract_pair(job)
        if suspect == target:
            logger.debug("Skipping event from protected account", job_id=job.id, account_id=target)
            return {"skipped": "self_event"}

        if cooldown and not await self._hold_pair(job, suspect, target):
            logger.debug("Pair scored recently, skipping", suspect=suspect, target=target)
            return {"skipped": "cooldown"}

        payload = {
            "suspect_account_id": suspect,
            "target_account_id": target,
            "owner_id": job.payload.get("owner_id"),
            "source": {"queue": job.queue_name, "job_type": job.job_type, "job_id": job.id},
        }
        if job.payload.get("notify"):
            payload["notify"] = job.payload["notify"]

        scoring_job_id = await self.orchestrator.enqueue(
            QueueName.SCORING, scoring_type, payload, JobOptions(priority=priority)
        )
        return {"scoring_job_id": scoring_job_id, "suspect_account_id": suspect}

    async def process_mention(self, job: Job) -> dict[str, Any]:
        return await self._route(job)

    async def process_reply(self, job: Job) -> dict[str, Any]:
        return await self._route(job)

    async def process_dm(self, job: Job) -> dict[str, Any]:
        return await self._route(job, priority=DM_PRIORITY)

    async def process_follow(self, job: Job) -> dict[str, Any]:
        return await self._route(job)

    async def process_tweet(self, job: Job) -> dict[str, Any]:
        return await self._route(job)

    async def process_user_update(self, job: Job) -> dict[str, Any]:
        # A changed profile is re-scored even inside the cooldown
        return await self._route(job, ScoringJobType.UPDATE_SCORE, cooldown=False)

    async def process_follow_event(self, job: Job) -> dict[str, Any]:
        return await self._route(job)

    def webhook_handlers(self) -> dict[WebhookJobType, Any]:
        return {
            WebhookJobType.PROCESS_MENTION: self.process_mention,
            WebhookJobType.PROCESS_REPLY: self.process_reply,
            WebhookJobType.PROCESS_DM: self.process_dm,
            WebhookJobType.PROCESS_FOLLOW: self.process_follow,
        }

    def stream_handlers(self) -> dict[StreamJobType, Any]:
        return {
            StreamJobType.PROCESS_TWEET: self.process_tweet,
            StreamJobType.PROCESS_USER_UPDATE: self.process_user_update,
            StreamJobType.PROCESS_FOLLOW_EVENT: self.process_follow_event,
        }
