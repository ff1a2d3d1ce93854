import asyncio

import pytest

from bouncer.errors import ConfigurationError
from bouncer.jobs import worker
from bouncer.queues.models import QueueName


def test_resolve_queue_names_from_args():
    assert worker._resolve_queue_names(["scoring", "notification"]) == [
        QueueName.SCORING,
        QueueName.NOTIFICATION,
    ]
    assert worker._resolve_queue_names(["webhook,STREAM"]) == [QueueName.WEBHOOK, QueueName.STREAM]


def test_resolve_queue_names_from_environment(monkeypatch):
    monkeypatch.setenv("WORKER_QUEUES", "scoring")
    assert worker._resolve_queue_names([]) == [QueueName.SCORING]

    monkeypatch.delenv("WORKER_QUEUES")
    assert worker._resolve_queue_names([]) == list(QueueName)


def test_resolve_queue_names_all():
    assert worker._resolve_queue_names(["all"]) == list(QueueName)


def test_resolve_queue_names_unknown():
    with pytest.raises(ConfigurationError):
        worker._resolve_queue_names(["billing"])


@pytest.mark.asyncio
async def test_run_worker_starts_and_stops_cleanly(monkeypatch):
    monkeypatch.setattr(worker.settings, "QUEUE_BACKEND", "memory")
    monkeypatch.setattr(worker.settings, "RATE_LIMIT_ENABLED", False)
    monkeypatch.setattr(worker.settings, "DATABASE_URL", None)
    monkeypatch.setattr(worker.settings, "FEATURE_SOURCE_URL", None)

    stop = asyncio.Event()
    stop.set()

    forced = await worker.run_worker([QueueName.SCORING], stop=stop)

    assert forced is False


@pytest.mark.asyncio
async def test_run_worker_refuses_invalid_config(monkeypatch):
    monkeypatch.setattr(worker.settings, "QUEUE_BACKEND", "kafka")

    with pytest.raises(ConfigurationError):
        await worker.run_worker([QueueName.SCORING], stop=asyncio.Event())
