from datetime import UTC, datetime, timedelta

import pytest

from bouncer.repositories.event_repository import EventFilters, InMemoryEventRepository
from bouncer.scoring.engine import Action, DetectionEvent


def event(event_id, score, action, minutes_ago=0, suspect="200", target="100"):
    return DetectionEvent(
        id=event_id,
        suspect_account_id=suspect,
        target_account_id=target,
        score=score,
        confidence=0.9,
        factors={},
        weights={},
        reasoning=[],
        action=action,
        created_at=datetime.now(UTC) - timedelta(minutes=minutes_ago),
    )


@pytest.mark.asyncio
async def test_find_by_target_filters_and_orders_newest_first():
    repo = InMemoryEventRepository()
    await repo.save(event("old", 0.9, Action.AUTO_RESPOND, minutes_ago=30))
    await repo.save(event("new", 0.7, Action.FLAG_HIGH, minutes_ago=1))
    await repo.save(event("low", 0.1, Action.IGNORE, minutes_ago=5))
    await repo.save(event("other", 0.9, Action.AUTO_RESPOND, target="999"))

    assert [e.id for e in await repo.find_by_target("100")] == ["new", "low", "old"]
    assert [e.id for e in await repo.find_by_target("100", EventFilters(min_score=0.5))] == [
        "new",
        "old",
    ]
    assert [
        e.id for e in await repo.find_by_target("100", EventFilters(action=Action.IGNORE))
    ] == ["low"]
    assert len(await repo.find_by_target("100", EventFilters(limit=1))) == 1


@pytest.mark.asyncio
async def test_saving_the_same_id_twice_keeps_one_event():
    repo = InMemoryEventRepository()
    await repo.save(event("evt_1", 0.9, Action.AUTO_RESPOND))
    await repo.save(event("evt_1", 0.9, Action.AUTO_RESPOND))

    assert len(await repo.find_by_target("100")) == 1


@pytest.mark.asyncio
async def test_latest_for_pair():
    repo = InMemoryEventRepository()
    await repo.save(event("a", 0.4, Action.QUEUE_REVIEW, minutes_ago=10))
    await repo.save(event("b", 0.9, Action.AUTO_RESPOND, minutes_ago=1))

    latest = await repo.latest_for_pair("200", "100")
    assert latest.id == "b"
    assert await repo.latest_for_pair("300", "100") is None


@pytest.mark.asyncio
async def test_mark_reviewed_records_decision():
    repo = InMemoryEventRepository()
    await repo.save(event("a", 0.7, Action.FLAG_HIGH))

    updated = await repo.mark_reviewed("a", Action.IGNORE, "parody account")

    assert updated.reviewed is True
    assert updated.action == Action.IGNORE
    assert updated.review_notes == "parody account"
    assert await repo.mark_reviewed("missing", Action.IGNORE) is None
    assert [e.id for e in await repo.find_by_target("100", EventFilters(reviewed=False))] == []


@pytest.mark.asyncio
async def test_postgres_repository_schema_and_idempotent_insert(monkeypatch):
    from bouncer.repositories import event_repository

    statements = []

    async def fake_execute(query, params=(), *, pool=None):
        statements.append((" ".join(query.split()), params))
        return 1

    monkeypatch.setattr(event_repository, "execute_query", fake_execute)
    repo = event_repository.PostgresEventRepository()

    await repo.ensure_schema()
    assert [s for s, _ in statements][0].startswith("CREATE TABLE IF NOT EXISTS detection_events")
    assert len(statements) == 3

    await repo.save(event("evt_1", 0.9, Action.AUTO_RESPOND))
    query, params = statements[-1]
    assert "ON CONFLICT (id) DO NOTHING" in query
    assert params[0] == "evt_1"
    assert params[8] == "auto_respond"


@pytest.mark.asyncio
async def test_postgres_repository_builds_filtered_query(monkeypatch):
    from bouncer.repositories import event_repository

    captured = {}

    async def fake_fetch_all(query, params=(), *, pool=None):
        captured["query"] = " ".join(query.split())
        captured["params"] = params
        return [event("a", 0.9, Action.AUTO_RESPOND).to_dict()]

    monkeypatch.setattr(event_repository, "fetch_all", fake_fetch_all)
    repo = event_repository.PostgresEventRepository()

    events = await repo.find_by_target(
        "100", EventFilters(action=Action.AUTO_RESPOND, min_score=0.5, limit=5)
    )

    assert "target_account_id = %s AND action = %s AND score >= %s" in captured["query"]
    assert captured["params"] == ("100", "auto_respond", 0.5, 5)
    assert [e.id for e in events] == ["a"]


@pytest.mark.asyncio
async def test_resaving_an_event_keeps_the_review_decision():
    repo = InMemoryEventRepository()
    await repo.save(event("evt_1", 0.9, Action.AUTO_RESPOND))
    await repo.mark_reviewed("evt_1", Action.IGNORE, "known fan account")

    await repo.save(event("evt_1", 0.9, Action.AUTO_RESPOND))

    stored = await repo.latest_for_pair("200", "100")
    assert stored.reviewed is True
    assert stored.action == Action.IGNORE
