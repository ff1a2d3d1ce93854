import asyncio

import pytest
import pytest_asyncio

from bouncer.queues.orchestrator import QueueOrchestrator
from bouncer.queues.store import InMemoryJobStore


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.available = True

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def set_if_absent(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if key in self.store:
            return False
        return await self.set_with_ttl(key, value, ttl_s)

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def incr_window(self, key: str, ttl_s: int) -> int | None:
        if not self.available:
            return None
        count = int(self.store.get(key, 0)) + 1
        self.store[key] = str(count)
        if count == 1:
            self.ttls[key] = ttl_s
        return count


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def orchestrator():
    orch = QueueOrchestrator(
        InMemoryJobStore(),
        default_max_attempts=3,
        backoff_base_ms=10,
        lease_seconds=5,
        poll_interval=0.02,
        metrics_interval=60,
        shutdown_timeout=2,
    )
    yield orch
    await orch.close()


async def _wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an async predicate until it returns something truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


async def _wait_for_status(orch: QueueOrchestrator, job_id: str, *statuses: str, timeout: float = 3.0):
    async def _check():
        job = await orch.get_job(job_id)
        return job if job is not None and job.status in statuses else None

    return await _wait_for(_check, timeout=timeout)


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def wait_for_status():
    return _wait_for_status
