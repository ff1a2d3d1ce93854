import pytest

from bouncer.errors import TransientUpstreamError, ValidationError
from bouncer.jobs.ingest_jobs import IngestJobs
from bouncer.queues.models import Job


class RecordingOrchestrator:
    """Collects enqueued scoring jobs; fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.enqueued = []

    async def enqueue(self, queue_name, job_type, payload, options=None):
        if self.failures:
            self.failures -= 1
            raise TransientUpstreamError("queue store unavailable")
        self.enqueued.append((str(queue_name), str(job_type), payload, options))
        return f"scoring:{len(self.enqueued):012d}"


def mention_job(job_id: str, author_id: str = "200") -> Job:
    return Job(
        id=job_id,
        queue_name="webhook",
        job_type="process_mention",
        payload={"target_account_id": "100", "event": {"author_id": author_id}},
        max_attempts=3,
        seq=1,
    )


@pytest.mark.asyncio
async def test_retry_after_failed_enqueue_still_routes_the_pair(fake_redis):
    orchestrator = RecordingOrchestrator(failures=1)
    ingest = IngestJobs(orchestrator, fake_redis, pair_cooldown_seconds=300)
    job = mention_job("webhook:000000000001")

    with pytest.raises(TransientUpstreamError):
        await ingest.process_mention(job)
    result = await ingest.process_mention(job)

    assert result["scoring_job_id"] == "scoring:000000000001"
    assert len(orchestrator.enqueued) == 1


@pytest.mark.asyncio
async def test_other_events_for_a_held_pair_are_skipped(fake_redis):
    orchestrator = RecordingOrchestrator()
    ingest = IngestJobs(orchestrator, fake_redis, pair_cooldown_seconds=300)

    await ingest.process_mention(mention_job("webhook:000000000001"))
    second = await ingest.process_mention(mention_job("webhook:000000000002"))

    assert second == {"skipped": "cooldown"}
    assert fake_redis.ttls["cooldown:pair:200:100"] == 300
    assert len(orchestrator.enqueued) == 1


@pytest.mark.asyncio
async def test_unreadable_cooldown_store_lets_events_through():
    class DownStore:
        async def set_if_absent(self, key, value, ttl_s=None):
            return False

        async def get(self, key):
            return None

    orchestrator = RecordingOrchestrator()
    ingest = IngestJobs(orchestrator, DownStore(), pair_cooldown_seconds=300)

    await ingest.process_mention(mention_job("webhook:000000000001"))
    await ingest.process_mention(mention_job("webhook:000000000002"))

    assert len(orchestrator.enqueued) == 2


@pytest.mark.asyncio
async def test_event_without_suspect_is_rejected(fake_redis):
    ingest = IngestJobs(RecordingOrchestrator(), fake_redis, pair_cooldown_seconds=300)
    job = mention_job("webhook:000000000001")
    job.payload["event"] = {}

    with pytest.raises(ValidationError):
        await ingest.process_mention(job)
