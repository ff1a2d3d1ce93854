"""
Redis-backed job store.

Layout per queue (``{p}`` = key prefix, ``{q}`` = queue name):

- ``{p}:job:{id}``          hash: ``record`` (job JSON), ``status``, ``token``,
                            ``lease_expires_ms``, ``started_ms``, ``priority``
- ``{p}:queue:{q}:pending`` zset of waiting/retrying jobs scored by next_run_at (ms)
- ``{p}:queue:{q}:active``  zset of leased jobs scored by lease expiry (ms)
- ``{p}:queue:{q}:completed`` / ``:dead`` lists, newest first
- ``{p}:queue:{q}:paused``  flag key

Lua scripts make claim and every transition a single atomic step. Mutable
lease fields live beside the record so scripts never have to re-encode the
job JSON.
"""

import json
from datetime import datetime, timedelta
from typing import Any

from bouncer.errors import StaleLeaseError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.queues.models import Job, JobStatus, QueueStats, from_ms, to_ms, utcnow
from bouncer.queues.store import JobStore, new_lease_token
from bouncer.services.infrastructure.redis_client import RedisClient, redis_client

logger = get_logger(__name__)

# Pending candidates inspected per claim when picking by priority
CLAIM_SCAN_LIMIT = 50

CLAIM_LUA = """
local pending, active = KEYS[1], KEYS[2]
local job_prefix = ARGV[1]
local now_ms = tonumber(ARGV[2])
local lease_ms = tonumber(ARGV[3])
local token = ARGV[4]
local scan = tonumber(ARGV[5])

local ids = redis.call('ZRANGEBYSCORE', pending, '-inf', now_ms, 'LIMIT', 0, scan)
local best, best_priority = nil, nil
for _, id in ipairs(ids) do
    local priority = redis.call('HGET', job_prefix .. id, 'priority')
    if not priority then
        redis.call('ZREM', pending, id)
    else
        priority = tonumber(priority)
        if best == nil or priority < best_priority then
            best, best_priority = id, priority
        end
    end
end
if best == nil then
    return false
end

redis.call('ZREM', pending, best)
redis.call('ZADD', active, now_ms + lease_ms, best)
redis.call('HSET', job_prefix .. best,
    'status', 'active', 'token', token,
    'lease_expires_ms', now_ms + lease_ms, 'started_ms', now_ms)
return best
"""

EXTEND_LUA = """
local job_key, active = KEYS[1], KEYS[2]
if redis.call('HGET', job_key, 'token') ~= ARGV[1] then
    return 0
end
redis.call('HSET', job_key, 'lease_expires_ms', ARGV[2])
redis.call('ZADD', active, 'XX', ARGV[2], ARGV[3])
return 1
"""

# KEYS: job, active, target structure. ARGV: token, job id, new status,
# record JSON, mode, mode arg, job key prefix
TRANSITION_LUA = """
local job_key, active, target = KEYS[1], KEYS[2], KEYS[3]
local token, job_id, status, record = ARGV[1], ARGV[2], ARGV[3], ARGV[4]
local mode, mode_arg, job_prefix = ARGV[5], tonumber(ARGV[6]), ARGV[7]

if redis.call('HGET', job_key, 'token') ~= token then
    return false
end

redis.call('ZREM', active, job_id)
redis.call('HDEL', job_key, 'token', 'lease_expires_ms')
redis.call('HSET', job_key, 'status', status, 'record', record)

local archived = {}
if mode == 'pending' then
    redis.call('ZADD', target, mode_arg, job_id)
else
    redis.call('LPUSH', target, job_id)
    while redis.call('LLEN', target) > mode_arg do
        local old = redis.call('RPOP', target)
        redis.call('DEL', job_prefix .. old)
        table.insert(archived, old)
    end
end
return archived
"""

RECOVER_LUA = """
local active, pending = KEYS[1], KEYS[2]
local job_prefix = ARGV[1]
local now_ms = tonumber(ARGV[2])

local ids = redis.call('ZRANGEBYSCORE', active, '-inf', now_ms)
for _, id in ipairs(ids) do
    redis.call('ZREM', active, id)
    redis.call('HDEL', job_prefix .. id, 'token', 'lease_expires_ms')
    redis.call('HSET', job_prefix .. id, 'status', 'waiting')
    redis.call('ZADD', pending, now_ms, id)
end
return ids
"""

REQUEUE_LUA = """
local dead, pending, job_key = KEYS[1], KEYS[2], KEYS[3]
if redis.call('LREM', dead, 1, ARGV[1]) == 0 then
    return 0
end
redis.call('HSET', job_key, 'status', 'waiting', 'record', ARGV[2])
redis.call('ZADD', pending, ARGV[3], ARGV[1])
return 1
"""

TRIM_LUA = """
local list, job_prefix, keep = KEYS[1], ARGV[1], tonumber(ARGV[2])
local removed = 0
while redis.call('LLEN', list) > keep do
    local old = redis.call('RPOP', list)
    redis.call('DEL', job_prefix .. old)
    removed = removed + 1
end
return removed
"""


class RedisJobStore(JobStore):
    """Job store shared by every worker process connected to the same Redis."""

    def __init__(self, client: RedisClient | None = None, prefix: str = "bouncer"):
        self.redis = client or redis_client
        self.prefix = prefix

    # Key helpers
    def _job_prefix(self) -> str:
        return f"{self.prefix}:job:"

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix()}{job_id}"

    def _queue_key(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:{suffix}"

    @property
    def _client(self):
        return self.redis.client

    async def _hydrate(self, job_id: str) -> Job | None:
        fields = await self._client.hgetall(self._job_key(job_id))
        if not fields or "record" not in fields:
            return None

        job = Job.from_json(fields["record"])
        job.status = JobStatus(fields.get("status", job.status))
        job.lease_token = fields.get("token")
        if fields.get("lease_expires_ms"):
            job.lease_expires_at = from_ms(fields["lease_expires_ms"])
        if fields.get("started_ms") and job.status == JobStatus.ACTIVE:
            job.started_at = from_ms(fields["started_ms"])
        return job

    async def next_seq(self) -> int:
        await self.redis.ensure_ready()
        return int(await self._client.incr(f"{self.prefix}:jobs:seq"))

    async def add(self, job: Job) -> None:
        await self.redis.ensure_ready()
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "record": job.to_json(),
                    "status": job.status.value,
                    "priority": job.priority,
                },
            )
            pipe.zadd(self._queue_key(job.queue_name, "pending"), {job.id: to_ms(job.next_run_at)})
            await pipe.execute()

    async def claim(self, queue_name: str, lease_seconds: float) -> Job | None:
        token = new_lease_token()
        job_id = await self.redis.run_script(
            CLAIM_LUA,
            keys=[self._queue_key(queue_name, "pending"), self._queue_key(queue_name, "active")],
            args=[
                self._job_prefix(),
                to_ms(utcnow()),
                int(lease_seconds * 1000),
                token,
                CLAIM_SCAN_LIMIT,
            ],
        )
        if not job_id:
            return None

        job = await self._hydrate(job_id)
        if job is None:
            logger.warning("Claimed job has no record", queue=queue_name, job_id=job_id)
            return None
        return job

    async def extend_lease(self, job: Job, lease_seconds: float) -> bool:
        expires_ms = to_ms(utcnow() + timedelta(seconds=lease_seconds))
        extended = await self.redis.run_script(
            EXTEND_LUA,
            keys=[self._job_key(job.id), self._queue_key(job.queue_name, "active")],
            args=[job.lease_token or "", expires_ms, job.id],
        )
        if extended:
            job.lease_expires_at = from_ms(expires_ms)
        return bool(extended)

    async def _transition(
        self, job: Job, status: JobStatus, target: str, mode: str, mode_arg: int
    ) -> list[str]:
        job.status = status
        record = job.to_dict()
        record["lease_token"] = None
        record["lease_expires_at"] = None

        archived = await self.redis.run_script(
            TRANSITION_LUA,
            keys=[
                self._job_key(job.id),
                self._queue_key(job.queue_name, "active"),
                self._queue_key(job.queue_name, target),
            ],
            args=[
                job.lease_token or "",
                job.id,
                status.value,
                json.dumps(record, default=str),
                mode,
                mode_arg,
                self._job_prefix(),
            ],
        )
        if archived is None:
            raise StaleLeaseError(f"Lease for job {job.id} is no longer held")
        return list(archived)

    async def complete(self, job: Job, result: Any, duration_ms: float, keep: int) -> None:
        job.result = result
        job.duration_ms = duration_ms
        job.finished_at = utcnow()
        await self._transition(job, JobStatus.COMPLETED, "completed", "list", keep)

    async def retry(self, job: Job, attempts: int, error: str, next_run_at: datetime) -> None:
        job.attempts = attempts
        job.last_error = error
        job.next_run_at = next_run_at
        await self._transition(job, JobStatus.FAILED, "pending", "pending", to_ms(next_run_at))

    async def bury(self, job: Job, attempts: int, error: str, keep: int) -> list[str]:
        job.attempts = attempts
        job.last_error = error
        job.finished_at = utcnow()
        return await self._transition(job, JobStatus.DEAD, "dead", "list", keep)

    async def recover_stalled(self, queue_name: str) -> list[str]:
        ids = await self.redis.run_script(
            RECOVER_LUA,
            keys=[self._queue_key(queue_name, "active"), self._queue_key(queue_name, "pending")],
            args=[self._job_prefix(), to_ms(utcnow())],
        )
        return list(ids or [])

    async def stats(self, queue_name: str) -> QueueStats:
        await self.redis.ensure_ready()
        now_ms = to_ms(utcnow())
        pending = self._queue_key(queue_name, "pending")
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.zcount(pending, "-inf", now_ms)
            pipe.zcount(pending, f"({now_ms}", "+inf")
            pipe.zcard(self._queue_key(queue_name, "active"))
            pipe.llen(self._queue_key(queue_name, "completed"))
            pipe.llen(self._queue_key(queue_name, "dead"))
            pipe.exists(self._queue_key(queue_name, "paused"))
            waiting, delayed, active, completed, dead, paused = await pipe.execute()

        return QueueStats(
            waiting=int(waiting),
            delayed=int(delayed),
            active=int(active),
            completed=int(completed),
            failed=int(dead),
            paused=bool(paused),
        )

    async def get(self, job_id: str) -> Job | None:
        await self.redis.ensure_ready()
        return await self._hydrate(job_id)

    async def dead_letters(self, queue_name: str, limit: int = 50) -> list[Job]:
        await self.redis.ensure_ready()
        ids = await self._client.lrange(self._queue_key(queue_name, "dead"), 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self._hydrate(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def requeue_dead(self, queue_name: str, job_id: str) -> bool:
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.DEAD:
            return False

        now = utcnow()
        job.status = JobStatus.WAITING
        job.attempts = 0
        job.next_run_at = now
        job.finished_at = None
        moved = await self.redis.run_script(
            REQUEUE_LUA,
            keys=[
                self._queue_key(queue_name, "dead"),
                self._queue_key(queue_name, "pending"),
                self._job_key(job_id),
            ],
            args=[job_id, job.to_json(), to_ms(now)],
        )
        return bool(moved)

    async def trim(self, queue_name: str, keep_completed: int, keep_dead: int) -> dict[str, int]:
        removed = {}
        for name, keep in (("completed", keep_completed), ("dead", keep_dead)):
            removed[name] = int(
                await self.redis.run_script(
                    TRIM_LUA,
                    keys=[self._queue_key(queue_name, name)],
                    args=[self._job_prefix(), keep],
                )
            )
        return removed

    async def set_paused(self, queue_name: str, paused: bool) -> None:
        await self.redis.ensure_ready()
        key = self._queue_key(queue_name, "paused")
        if paused:
            await self._client.set(key, "1")
        else:
            await self._client.delete(key)

    async def is_paused(self, queue_name: str) -> bool:
        await self.redis.ensure_ready()
        return bool(await self._client.exists(self._queue_key(queue_name, "paused")))
