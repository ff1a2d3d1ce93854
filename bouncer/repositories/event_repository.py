"""
Detection event persistence.

Workers only insert events. Review fields (``reviewed``, ``action``,
``review_notes``) are changed through ``mark_reviewed``.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol

from psycopg.types.json import Jsonb

from bouncer.db.helpers import execute_query, fetch_all, fetch_one
from bouncer.db.pool import DatabasePoolManager
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.scoring.engine import Action, DetectionEvent

logger = get_logger(__name__)


@dataclass(slots=True)
class EventFilters:
    action: Action | None = None
    reviewed: bool | None = None
    min_score: float | None = None
    since: datetime | None = None
    limit: int = 50

    def matches(self, event: DetectionEvent) -> bool:
        if self.action is not None and event.action != self.action:
            return False
        if self.reviewed is not None and event.reviewed != self.reviewed:
            return False
        if self.min_score is not None and event.score < self.min_score:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        return True


class EventRepository(Protocol):
    async def save(self, event: DetectionEvent) -> None: ...

    async def find_by_target(
        self, target_id: str, filters: EventFilters | None = None
    ) -> list[DetectionEvent]: ...

    async def latest_for_pair(self, suspect_id: str, target_id: str) -> DetectionEvent | None: ...

    async def mark_reviewed(
        self, event_id: str, action: Action, notes: str | None = None
    ) -> DetectionEvent | None: ...


class InMemoryEventRepository:
    def __init__(self):
        self._events: dict[str, DetectionEvent] = {}
        self._lock = asyncio.Lock()

    async def save(self, event: DetectionEvent) -> None:
        async with self._lock:
            self._events.setdefault(event.id, event)

    async def find_by_target(
        self, target_id: str, filters: EventFilters | None = None
    ) -> list[DetectionEvent]:
        filters = filters or EventFilters()
        async with self._lock:
            events = [
                e
                for e in self._events.values()
                if e.target_account_id == target_id and filters.matches(e)
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[: filters.limit]

    async def latest_for_pair(self, suspect_id: str, target_id: str) -> DetectionEvent | None:
        async with self._lock:
            events = [
                e
                for e in self._events.values()
                if e.suspect_account_id == suspect_id and e.target_account_id == target_id
            ]
        return max(events, key=lambda e: e.created_at, default=None)

    async def mark_reviewed(
        self, event_id: str, action: Action, notes: str | None = None
    ) -> DetectionEvent | None:
        async with self._lock:
            event = self._events.get(event_id)
            if event is None:
                return None
            updated = replace(event, reviewed=True, action=Action(action), review_notes=notes)
            self._events[event_id] = updated
            return updated


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS detection_events (
    id TEXT PRIMARY KEY,
    suspect_account_id TEXT NOT NULL,
    target_account_id TEXT NOT NULL,
    score DOUBLE PRECISION NOT NULL,
    confidence DOUBLE PRECISION NOT NULL,
    factors JSONB NOT NULL,
    weights JSONB NOT NULL,
    reasoning JSONB NOT NULL,
    action TEXT NOT NULL,
    reviewed BOOLEAN NOT NULL DEFAULT FALSE,
    review_notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_detection_events_target
    ON detection_events (target_account_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_detection_events_pair
    ON detection_events (suspect_account_id, target_account_id, created_at DESC);
"""

_COLUMNS = """
    id, suspect_account_id, target_account_id, score, confidence, factors,
    weights, reasoning, action, reviewed, review_notes, created_at
"""


def _row_to_event(row: dict[str, Any]) -> DetectionEvent:
    return DetectionEvent.from_dict(dict(row))


class PostgresEventRepository:
    """``detection_events`` table through the shared psycopg pool."""

    def __init__(self, pool: DatabasePoolManager | None = None):
        self.pool = pool

    async def ensure_schema(self) -> None:
        for statement in filter(None, (s.strip() for s in CREATE_TABLE_SQL.split(";"))):
            await execute_query(statement, pool=self.pool)

    async def save(self, event: DetectionEvent) -> None:
        await execute_query(
            f"""
            INSERT INTO detection_events ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (
                event.id,
                event.suspect_account_id,
                event.target_account_id,
                event.score,
                event.confidence,
                Jsonb(event.factors),
                Jsonb(event.weights),
                Jsonb(event.reasoning),
                event.action.value,
                event.reviewed,
                event.review_notes,
                event.created_at,
            ),
            pool=self.pool,
        )
        logger.debug("Detection event saved", event_id=event.id, action=event.action.value)

    async def find_by_target(
        self, target_id: str, filters: EventFilters | None = None
    ) -> list[DetectionEvent]:
        filters = filters or EventFilters()
        clauses = ["target_account_id = %s"]
        params: list[Any] = [target_id]

        if filters.action is not None:
            clauses.append("action = %s")
            params.append(Action(filters.action).value)
        if filters.reviewed is not None:
            clauses.append("reviewed = %s")
            params.append(filters.reviewed)
        if filters.min_score is not None:
            clauses.append("score >= %s")
            params.append(filters.min_score)
        if filters.since is not None:
            clauses.append("created_at >= %s")
            params.append(filters.since)
        params.append(filters.limit)

        rows = await fetch_all(
            f"""
            SELECT {_COLUMNS}
            FROM detection_events
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC
            LIMIT %s
            """,
            tuple(params),
            pool=self.pool,
        )
        return [_row_to_event(row) for row in rows]

    async def latest_for_pair(self, suspect_id: str, target_id: str) -> DetectionEvent | None:
        row = await fetch_one(
            f"""
            SELECT {_COLUMNS}
            FROM detection_events
            WHERE suspect_account_id = %s AND target_account_id = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (suspect_id, target_id),
            pool=self.pool,
        )
        return _row_to_event(row) if row else None

    async def mark_reviewed(
        self, event_id: str, action: Action, notes: str | None = None
    ) -> DetectionEvent | None:
        row = await fetch_one(
            f"""
            UPDATE detection_events
            SET reviewed = TRUE, action = %s, review_notes = %s
            WHERE id = %s
            RETURNING {_COLUMNS}
            """,
            (Action(action).value, notes, event_id),
            pool=self.pool,
        )
        if row is None:
            return None
        logger.info("Detection event reviewed", event_id=event_id, action=Action(action).value)
        return _row_to_event(row)
