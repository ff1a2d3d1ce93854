"""
Job state storage.

``JobStore`` is the contract the orchestrator relies on: atomic
claim-with-lease, token-checked transitions, stalled-lease recovery and
read-only stats. ``InMemoryJobStore`` implements it for a single process;
``RedisJobStore`` (see redis_store.py) shares state across processes.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from typing import Any

from bouncer.errors import StaleLeaseError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.queues.models import Job, JobStatus, QueueStats, utcnow

logger = get_logger(__name__)


def format_job_id(queue_name: str, seq: int) -> str:
    # Zero padding keeps lexicographic order equal to enqueue order
    return f"{queue_name}:{seq:012d}"


def new_lease_token() -> str:
    return uuid.uuid4().hex


class JobStore(ABC):
    """Persistence contract for queued jobs."""

    @abstractmethod
    async def next_seq(self) -> int: ...

    @abstractmethod
    async def add(self, job: Job) -> None: ...

    @abstractmethod
    async def claim(self, queue_name: str, lease_seconds: float) -> Job | None:
        """Atomically take the next ready job and lease it to the caller."""

    @abstractmethod
    async def extend_lease(self, job: Job, lease_seconds: float) -> bool: ...

    @abstractmethod
    async def complete(self, job: Job, result: Any, duration_ms: float, keep: int) -> None:
        """Raises StaleLeaseError if ``job.lease_token`` is no longer current."""

    @abstractmethod
    async def retry(self, job: Job, attempts: int, error: str, next_run_at: datetime) -> None: ...

    @abstractmethod
    async def bury(self, job: Job, attempts: int, error: str, keep: int) -> list[str]:
        """Dead-letter a job. Returns ids archived out of the dead list by retention."""

    @abstractmethod
    async def recover_stalled(self, queue_name: str) -> list[str]: ...

    @abstractmethod
    async def stats(self, queue_name: str) -> QueueStats: ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def dead_letters(self, queue_name: str, limit: int = 50) -> list[Job]: ...

    @abstractmethod
    async def requeue_dead(self, queue_name: str, job_id: str) -> bool: ...

    @abstractmethod
    async def trim(self, queue_name: str, keep_completed: int, keep_dead: int) -> dict[str, int]: ...

    @abstractmethod
    async def set_paused(self, queue_name: str, paused: bool) -> None: ...

    @abstractmethod
    async def is_paused(self, queue_name: str) -> bool: ...


class InMemoryJobStore(JobStore):
    """Single-process store guarded by one asyncio lock."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._seq = 0
        self._jobs: dict[str, Job] = {}
        self._pending: dict[str, set[str]] = {}
        self._active: dict[str, set[str]] = {}
        self._completed: dict[str, deque[str]] = {}
        self._dead: dict[str, deque[str]] = {}
        self._paused: set[str] = set()

    def _bucket(self, table: dict, queue_name: str, factory):
        if queue_name not in table:
            table[queue_name] = factory()
        return table[queue_name]

    @staticmethod
    def _snapshot(job: Job) -> Job:
        return Job.from_dict(job.to_dict())

    def _current(self, job: Job) -> Job:
        stored = self._jobs.get(job.id)
        if (
            stored is None
            or stored.status != JobStatus.ACTIVE
            or stored.lease_token != job.lease_token
        ):
            raise StaleLeaseError(f"Lease for job {job.id} is no longer held")
        return stored

    def _release(self, stored: Job) -> None:
        self._bucket(self._active, stored.queue_name, set).discard(stored.id)
        stored.lease_token = None
        stored.lease_expires_at = None

    async def next_seq(self) -> int:
        async with self._lock:
            self._seq += 1
            return self._seq

    async def add(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = self._snapshot(job)
            self._bucket(self._pending, job.queue_name, set).add(job.id)

    async def claim(self, queue_name: str, lease_seconds: float) -> Job | None:
        async with self._lock:
            now = utcnow()
            pending = self._bucket(self._pending, queue_name, set)
            ready = [self._jobs[job_id] for job_id in pending if self._jobs[job_id].next_run_at <= now]
            if not ready:
                return None

            job = min(ready, key=lambda j: j.sort_key)
            pending.discard(job.id)
            self._bucket(self._active, queue_name, set).add(job.id)

            job.status = JobStatus.ACTIVE
            job.started_at = now
            job.lease_token = new_lease_token()
            job.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return self._snapshot(job)

    async def extend_lease(self, job: Job, lease_seconds: float) -> bool:
        async with self._lock:
            try:
                stored = self._current(job)
            except StaleLeaseError:
                return False
            stored.lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
            return True

    async def complete(self, job: Job, result: Any, duration_ms: float, keep: int) -> None:
        async with self._lock:
            stored = self._current(job)
            self._release(stored)
            stored.status = JobStatus.COMPLETED
            stored.result = result
            stored.duration_ms = duration_ms
            stored.finished_at = utcnow()

            completed = self._bucket(self._completed, stored.queue_name, deque)
            completed.appendleft(stored.id)
            while len(completed) > keep:
                self._jobs.pop(completed.pop(), None)

    async def retry(self, job: Job, attempts: int, error: str, next_run_at: datetime) -> None:
        async with self._lock:
            stored = self._current(job)
            self._release(stored)
            stored.status = JobStatus.FAILED
            stored.attempts = attempts
            stored.last_error = error
            stored.next_run_at = next_run_at
            self._bucket(self._pending, stored.queue_name, set).add(stored.id)

    async def bury(self, job: Job, attempts: int, error: str, keep: int) -> list[str]:
        async with self._lock:
            stored = self._current(job)
            self._release(stored)
            stored.status = JobStatus.DEAD
            stored.attempts = attempts
            stored.last_error = error
            stored.finished_at = utcnow()

            dead = self._bucket(self._dead, stored.queue_name, deque)
            dead.appendleft(stored.id)
            archived = []
            while len(dead) > keep:
                archived_id = dead.pop()
                self._jobs.pop(archived_id, None)
                archived.append(archived_id)
            return archived

    async def recover_stalled(self, queue_name: str) -> list[str]:
        async with self._lock:
            now = utcnow()
            active = self._bucket(self._active, queue_name, set)
            expired = [
                job_id
                for job_id in active
                if self._jobs[job_id].lease_expires_at and self._jobs[job_id].lease_expires_at <= now
            ]
            for job_id in expired:
                stored = self._jobs[job_id]
                self._release(stored)
                stored.status = JobStatus.WAITING
                self._bucket(self._pending, queue_name, set).add(job_id)
            return expired

    async def stats(self, queue_name: str) -> QueueStats:
        async with self._lock:
            now = utcnow()
            pending = [self._jobs[job_id] for job_id in self._pending.get(queue_name, ())]
            return QueueStats(
                waiting=sum(1 for j in pending if j.next_run_at <= now),
                delayed=sum(1 for j in pending if j.next_run_at > now),
                active=len(self._active.get(queue_name, ())),
                completed=len(self._completed.get(queue_name, ())),
                failed=len(self._dead.get(queue_name, ())),
                paused=queue_name in self._paused,
            )

    async def get(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job else None

    async def dead_letters(self, queue_name: str, limit: int = 50) -> list[Job]:
        async with self._lock:
            ids = list(self._dead.get(queue_name, ()))[:limit]
            return [self._snapshot(self._jobs[job_id]) for job_id in ids]

    async def requeue_dead(self, queue_name: str, job_id: str) -> bool:
        async with self._lock:
            dead = self._dead.get(queue_name)
            if not dead or job_id not in dead:
                return False
            dead.remove(job_id)
            stored = self._jobs[job_id]
            stored.status = JobStatus.WAITING
            stored.attempts = 0
            stored.next_run_at = utcnow()
            stored.finished_at = None
            self._bucket(self._pending, queue_name, set).add(job_id)
            return True

    async def trim(self, queue_name: str, keep_completed: int, keep_dead: int) -> dict[str, int]:
        async with self._lock:
            removed = {"completed": 0, "dead": 0}
            for name, table, keep in (
                ("completed", self._completed, keep_completed),
                ("dead", self._dead, keep_dead),
            ):
                entries = table.get(queue_name)
                while entries and len(entries) > keep:
                    self._jobs.pop(entries.pop(), None)
                    removed[name] += 1
            return removed

    async def set_paused(self, queue_name: str, paused: bool) -> None:
        async with self._lock:
            if paused:
                self._paused.add(queue_name)
            else:
                self._paused.discard(queue_name)

    async def is_paused(self, queue_name: str) -> bool:
        return queue_name in self._paused
