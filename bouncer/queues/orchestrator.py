"""
Multi-queue job orchestrator.

One orchestrator per process owns the four queues. Each registered queue runs
``concurrency`` worker slots that claim jobs from the shared ``JobStore``,
renew their lease while the handler runs, and record the outcome:

- success: ``completed`` with result and duration
- retryable failure with attempts left: back to the pending set with
  exponential backoff (``base * 2^(attempts-1)``)
- otherwise: ``dead``, reported to dead-letter observers and kept for triage
"""

import asyncio
import inspect
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from enum import StrEnum
from typing import Any

from bouncer.config import Settings
from bouncer.errors import (
    ConfigurationError,
    StaleLeaseError,
    UnknownJobTypeError,
    UnknownQueueError,
    ValidationError,
    is_retryable,
)
from bouncer.infrastructure.observability.logging import (
    get_logger,
    log_job_added,
    log_job_completed,
    log_job_dead,
    log_job_failed,
    log_job_processing,
    log_job_retry,
    log_queue_depth,
)
from bouncer.queues.models import JOB_TYPES, Job, JobOptions, JobStatus, QueueName, utcnow
from bouncer.queues.store import JobStore, format_job_id

logger = get_logger(__name__)

Handler = Callable[[Job], Any]
DeadLetterCallback = Callable[[Job], Awaitable[None] | None]


class QueueMetrics:
    """In-process counters per queue, reset on demand."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = utcnow()
        self.queues: dict[str, dict[str, float]] = {}

    def _bucket(self, queue_name: str) -> dict[str, float]:
        return self.queues.setdefault(
            queue_name,
            {
                "processed": 0,
                "succeeded": 0,
                "failed_attempts": 0,
                "dead_lettered": 0,
                "total_duration_ms": 0.0,
            },
        )

    def record_success(self, queue_name: str, duration_ms: float):
        bucket = self._bucket(queue_name)
        bucket["processed"] += 1
        bucket["succeeded"] += 1
        bucket["total_duration_ms"] += duration_ms

    def record_failure(self, queue_name: str, duration_ms: float):
        bucket = self._bucket(queue_name)
        bucket["processed"] += 1
        bucket["failed_attempts"] += 1
        bucket["total_duration_ms"] += duration_ms

    def record_dead(self, queue_name: str):
        self._bucket(queue_name)["dead_lettered"] += 1

    def to_dict(self) -> dict:
        queues = {}
        for name, bucket in self.queues.items():
            processed = bucket["processed"]
            queues[name] = {
                "processed": processed,
                "succeeded": bucket["succeeded"],
                "failed_attempts": bucket["failed_attempts"],
                "dead_lettered": bucket["dead_lettered"],
                "avg_duration_ms": round(bucket["total_duration_ms"] / processed, 2)
                if processed
                else 0,
                "success_rate_percent": round(bucket["succeeded"] / processed * 100, 2)
                if processed
                else 0,
            }
        return {"since": self.start_time.isoformat(), "queues": queues}


class QueueOrchestrator:
    """Owns the queues of one process. Construct once and pass it around."""

    def __init__(
        self,
        store: JobStore,
        *,
        default_max_attempts: int = 3,
        backoff_base_ms: int = 5000,
        lease_seconds: float = 30,
        poll_interval: float = 1.0,
        metrics_interval: float = 30,
        keep_completed: int = 50,
        keep_dead: int = 1000,
        shutdown_timeout: float = 30,
    ):
        if default_max_attempts < 1:
            raise ConfigurationError("default_max_attempts must be at least 1")
        if lease_seconds <= 0:
            raise ConfigurationError("lease_seconds must be positive")

        self.store = store
        self.default_max_attempts = default_max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.metrics_interval = metrics_interval
        self.keep_completed = keep_completed
        self.keep_dead = keep_dead
        self.shutdown_timeout = shutdown_timeout

        self.metrics = QueueMetrics()
        self.last_stats: dict[str, dict] = {}
        self.last_stats_at: float | None = None
        self._closing = False
        self._closed = False
        self._slots: dict[QueueName, list[asyncio.Task]] = {}
        self._semaphores: dict[QueueName, asyncio.BoundedSemaphore] = {}
        self._wakeups: dict[QueueName, asyncio.Event] = {name: asyncio.Event() for name in QueueName}
        self._background: list[asyncio.Task] = []
        self._dead_callbacks: list[DeadLetterCallback] = []
        self._uncharged: dict[str, int] = {}

    @classmethod
    def from_settings(cls, store: JobStore, config: Settings) -> "QueueOrchestrator":
        return cls(
            store,
            default_max_attempts=config.QUEUE_MAX_RETRIES,
            backoff_base_ms=config.QUEUE_RETRY_DELAY_MS,
            lease_seconds=config.QUEUE_LEASE_SECONDS,
            poll_interval=config.QUEUE_POLL_INTERVAL_SECONDS,
            metrics_interval=config.QUEUE_METRICS_INTERVAL_SECONDS,
            keep_completed=config.QUEUE_KEEP_COMPLETED,
            keep_dead=config.QUEUE_KEEP_DEAD,
            shutdown_timeout=config.QUEUE_SHUTDOWN_TIMEOUT_SECONDS,
        )

    # Validation helpers

    @staticmethod
    def resolve_queue(queue_name: str) -> QueueName:
        try:
            return QueueName(queue_name)
        except ValueError:
            raise UnknownQueueError(
                f"Unknown queue: {queue_name}", details={"queue": str(queue_name)}
            ) from None

    @staticmethod
    def resolve_job_type(queue: QueueName, job_type: str) -> StrEnum:
        enum_cls = JOB_TYPES[queue]
        try:
            return enum_cls(job_type)
        except ValueError:
            raise UnknownJobTypeError(
                f"Job type {job_type} is not accepted by queue {queue}",
                details={"queue": queue.value, "job_type": str(job_type)},
            ) from None

    def backoff_delay_ms(self, attempts: int) -> int:
        """Delay before the next try after ``attempts`` failed attempts."""
        return int(self.backoff_base_ms * (2 ** max(attempts - 1, 0)))

    # Producer API

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        options: JobOptions | None = None,
        **overrides,
    ) -> str:
        """
        Add a job and return its id.

        ``overrides`` accepts the ``JobOptions`` fields directly
        (``delay_ms=``, ``priority=``, ``max_attempts=``).
        """
        if self._closing:
            raise ValidationError("Orchestrator is closing, not accepting jobs")

        queue = self.resolve_queue(queue_name)
        kind = self.resolve_job_type(queue, job_type)
        options = options or JobOptions(**overrides)

        payload = dict(payload or {})
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Job payload is not JSON serializable: {e}") from e

        max_attempts = options.max_attempts or self.default_max_attempts
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if options.delay_ms < 0:
            raise ValidationError("delay_ms cannot be negative")

        seq = await self.store.next_seq()
        now = utcnow()
        job = Job(
            id=format_job_id(queue.value, seq),
            queue_name=queue.value,
            job_type=kind.value,
            payload=payload,
            max_attempts=max_attempts,
            seq=seq,
            priority=options.priority,
            created_at=now,
            next_run_at=now + timedelta(milliseconds=options.delay_ms),
        )
        await self.store.add(job)
        log_job_added(queue.value, kind.value, job.id, delay_ms=options.delay_ms)

        self._wakeups[queue].set()
        return job.id

    # Worker API

    def register_worker(self, queue_name: str, concurrency: int, handler: Handler) -> None:
        """Start ``concurrency`` slots that run ``handler(job)`` for every claimed job."""
        queue = self.resolve_queue(queue_name)
        if concurrency < 1:
            raise ConfigurationError(f"Concurrency for {queue} must be at least 1")
        if queue in self._slots:
            raise ConfigurationError(f"A worker is already registered for queue {queue}")
        if self._closing:
            raise ConfigurationError("Orchestrator is closing")

        self._semaphores[queue] = asyncio.BoundedSemaphore(concurrency)
        self._slots[queue] = [
            asyncio.create_task(self._run_slot(queue, handler), name=f"{queue}-slot-{i}")
            for i in range(concurrency)
        ]
        logger.info("Worker registered", queue=queue.value, concurrency=concurrency)

    def register_handlers(
        self, queue_name: str, concurrency: int, handlers: Mapping[StrEnum, Handler]
    ) -> None:
        """Register a handler table that must cover every job type of the queue."""
        queue = self.resolve_queue(queue_name)
        expected = set(JOB_TYPES[queue])
        provided = {self.resolve_job_type(queue, key) for key in handlers}
        missing = expected - provided
        if missing:
            raise ConfigurationError(
                f"Handler table for {queue} is missing job types",
                details={"missing": sorted(m.value for m in missing)},
            )

        table = {self.resolve_job_type(queue, key).value: fn for key, fn in handlers.items()}

        async def dispatch(job: Job) -> Any:
            return await self._invoke(table[job.job_type], job)

        self.register_worker(queue, concurrency, dispatch)

    def on_dead(self, callback: DeadLetterCallback) -> None:
        self._dead_callbacks.append(callback)

    @staticmethod
    async def _invoke(handler: Handler, job: Job) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(job)
        # Blocking handlers must not stall the other slots
        result = await asyncio.to_thread(handler, job)
        if inspect.isawaitable(result):
            return await result
        return result

    async def _run_slot(self, queue: QueueName, handler: Handler) -> None:
        semaphore = self._semaphores[queue]
        wakeup = self._wakeups[queue]

        while not self._closing:
            try:
                if await self.store.is_paused(queue.value):
                    job = None
                else:
                    async with semaphore:
                        job = await self.store.claim(queue.value, self.lease_seconds)
                        if job is not None:
                            await self._process(queue, handler, job)
                            continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker slot error", queue=queue.value, error=str(e))
                job = None

            if job is None and not self._closing:
                wakeup.clear()
                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass

    async def _renew_lease(self, job: Job) -> None:
        interval = self.lease_seconds / 2
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.store.extend_lease(job, self.lease_seconds)
            except Exception as e:
                logger.warning("Lease renewal failed", job_id=job.id, error=str(e))
                continue
            if not renewed:
                logger.warning("Lease lost while job was running", job_id=job.id)
                return

    async def _process(self, queue: QueueName, handler: Handler, job: Job) -> None:
        attempt = max(job.attempts, self._uncharged.pop(job.id, 0)) + 1
        log_job_processing(queue.value, job.job_type, job.id, attempt)

        renewal = asyncio.create_task(self._renew_lease(job))
        started = time.perf_counter()
        error: Exception | None = None
        result = None
        try:
            result = await self._invoke(handler, job)
        except Exception as e:
            error = e
        finally:
            renewal.cancel()
        duration_ms = (time.perf_counter() - started) * 1000

        if error is None:
            try:
                await self.store.complete(job, result, duration_ms, keep=self.keep_completed)
            except StaleLeaseError:
                logger.warning("Completed job after losing its lease", job_id=job.id)
                return
            except Exception as e:
                logger.error("Failed to persist job completion", job_id=job.id, error=str(e))
                error = e
            else:
                self.metrics.record_success(queue.value, duration_ms)
                log_job_completed(queue.value, job.job_type, job.id, duration_ms)
                return

        await self._fail(queue, job, attempt, error, duration_ms)

    async def _fail(
        self, queue: QueueName, job: Job, attempt: int, error: Exception, duration_ms: float
    ) -> None:
        message = f"{type(error).__name__}: {error}"
        self.metrics.record_failure(queue.value, duration_ms)
        log_job_failed(queue.value, job.job_type, job.id, message, attempt)

        try:
            if is_retryable(error) and attempt < job.max_attempts:
                next_run_at = utcnow() + timedelta(milliseconds=self.backoff_delay_ms(attempt))
                await self.store.retry(job, attempt, message, next_run_at)
                log_job_retry(queue.value, job.job_type, job.id, next_run_at)
                return

            archived = await self.store.bury(job, attempt, message, keep=self.keep_dead)
        except StaleLeaseError:
            logger.warning("Failed job after losing its lease", job_id=job.id)
            return
        except Exception as e:
            # The lease runs out and the sweeper returns the job to waiting;
            # the next claim in this process charges the lost attempt
            logger.error("Failed to persist job failure", job_id=job.id, error=str(e))
            self._uncharged[job.id] = attempt
            return

        self.metrics.record_dead(queue.value)
        log_job_dead(queue.value, job.job_type, job.id, message, attempt)
        for archived_id in archived:
            logger.info("Dead job archived by retention", queue=queue.value, job_id=archived_id)

        job.status = JobStatus.DEAD
        job.attempts = attempt
        job.last_error = message
        await self._notify_dead(job)

    async def _notify_dead(self, job: Job) -> None:
        for callback in self._dead_callbacks:
            try:
                outcome = callback(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Dead-letter observer failed", job_id=job.id, error=str(e))

    # Operations

    async def pause(self, queue_name: str) -> None:
        queue = self.resolve_queue(queue_name)
        await self.store.set_paused(queue.value, True)
        logger.info("Queue paused", queue=queue.value)

    async def resume(self, queue_name: str) -> None:
        queue = self.resolve_queue(queue_name)
        await self.store.set_paused(queue.value, False)
        self._wakeups[queue].set()
        logger.info("Queue resumed", queue=queue.value)

    async def get_stats(self, queue_name: str) -> dict[str, Any]:
        queue = self.resolve_queue(queue_name)
        return (await self.store.stats(queue.value)).to_dict()

    async def get_all_stats(self) -> dict[str, dict[str, Any]]:
        """Stats for every queue. One failing queue does not hide the others."""
        results = {}
        for queue in QueueName:
            try:
                results[queue.value] = await self.get_stats(queue)
            except Exception as e:
                logger.error("Failed to read queue stats", queue=queue.value, error=str(e))
                results[queue.value] = {"error": str(e)}
        self.last_stats = results
        self.last_stats_at = time.monotonic()
        return results

    async def cached_stats(self, max_age: float) -> dict[str, dict[str, Any]]:
        """The last depth snapshot while younger than ``max_age`` seconds, else a fresh one."""
        if self.last_stats_at is not None and time.monotonic() - self.last_stats_at <= max_age:
            return self.last_stats
        return await self.get_all_stats()

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get(job_id)

    async def get_dead_letters(self, queue_name: str, limit: int = 50) -> list[Job]:
        queue = self.resolve_queue(queue_name)
        return await self.store.dead_letters(queue.value, limit)

    async def retry_dead(self, queue_name: str, job_id: str) -> bool:
        queue = self.resolve_queue(queue_name)
        moved = await self.store.requeue_dead(queue.value, job_id)
        if moved:
            logger.info("Dead job re-queued", queue=queue.value, job_id=job_id)
            self._wakeups[queue].set()
        return moved

    async def clean(
        self, queue_name: str, keep_completed: int | None = None, keep_dead: int | None = None
    ) -> dict[str, int]:
        queue = self.resolve_queue(queue_name)
        removed = await self.store.trim(
            queue.value,
            self.keep_completed if keep_completed is None else keep_completed,
            self.keep_dead if keep_dead is None else keep_dead,
        )
        logger.info("Queue cleaned", queue=queue.value, **removed)
        return removed

    async def recover_stalled(self) -> int:
        """Return every expired lease to waiting. Attempts are not charged."""
        recovered = 0
        for queue in QueueName:
            try:
                ids = await self.store.recover_stalled(queue.value)
            except Exception as e:
                logger.error("Stalled job sweep failed", queue=queue.value, error=str(e))
                continue
            if ids:
                logger.warning("Recovered stalled jobs", queue=queue.value, job_ids=ids)
                recovered += len(ids)
                self._wakeups[queue].set()
        return recovered

    # Background loops

    def start_background_tasks(self) -> None:
        if self._background:
            return
        self._background = [
            asyncio.create_task(self._metrics_loop(), name="queue-metrics"),
            asyncio.create_task(self._sweeper_loop(), name="queue-sweeper"),
        ]

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.metrics_interval)
            stats = await self.get_all_stats()
            for name, snapshot in stats.items():
                log_queue_depth(name, snapshot)
            logger.info("Queue processing metrics", **self.metrics.to_dict())

    async def _sweeper_loop(self) -> None:
        interval = max(self.lease_seconds / 2, self.poll_interval)
        while True:
            await asyncio.sleep(interval)
            await self.recover_stalled()

    # Shutdown

    async def close(self, timeout: float | None = None) -> bool:
        """
        Stop claiming, wait for in-flight handlers, then stop.

        Returns True when the timeout elapsed and remaining slots were
        cancelled (a forced exit).
        """
        if self._closed:
            return False
        self._closing = True
        timeout = self.shutdown_timeout if timeout is None else timeout

        for task in self._background:
            task.cancel()
        for wakeup in self._wakeups.values():
            wakeup.set()

        slots = [task for tasks in self._slots.values() for task in tasks]
        forced = False
        if slots:
            _, pending = await asyncio.wait(slots, timeout=timeout)
            if pending:
                forced = True
                logger.error(
                    "Queue orchestrator forced exit",
                    pending_slots=len(pending),
                    timeout_seconds=timeout,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await asyncio.gather(*self._background, return_exceptions=True)
        self._closed = True
        logger.info("Queue orchestrator closed", forced=forced)
        return forced
