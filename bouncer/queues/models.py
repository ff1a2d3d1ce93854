"""
Job records and the job types each queue accepts.

Each queue has its own job-type enum. Handler tables are keyed by those
enums and must cover every member (checked when a worker is registered).
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class QueueName(StrEnum):
    STREAM = "stream"
    WEBHOOK = "webhook"
    SCORING = "scoring"
    NOTIFICATION = "notification"


class JobStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # last attempt failed, retry scheduled
    DEAD = "dead"


class StreamJobType(StrEnum):
    PROCESS_TWEET = "process_tweet"
    PROCESS_USER_UPDATE = "process_user_update"
    PROCESS_FOLLOW_EVENT = "process_follow_event"


class WebhookJobType(StrEnum):
    PROCESS_MENTION = "process_mention"
    PROCESS_REPLY = "process_reply"
    PROCESS_DM = "process_dm"
    PROCESS_FOLLOW = "process_follow"


class ScoringJobType(StrEnum):
    ANALYZE_ACCOUNT = "analyze_account"
    EXTRACT_FEATURES = "extract_features"
    CALCULATE_SCORE = "calculate_score"
    UPDATE_SCORE = "update_score"


class NotificationJobType(StrEnum):
    SEND_EMAIL = "send_email"
    SEND_SLACK = "send_slack"
    SEND_DISCORD = "send_discord"
    SEND_DM = "send_dm"
    SEND_WEBHOOK = "send_webhook"


JOB_TYPES: dict[QueueName, type[StrEnum]] = {
    QueueName.STREAM: StreamJobType,
    QueueName.WEBHOOK: WebhookJobType,
    QueueName.SCORING: ScoringJobType,
    QueueName.NOTIFICATION: NotificationJobType,
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_ms(value: int | float | str) -> datetime:
    return datetime.fromtimestamp(int(float(value)) / 1000, tz=UTC)


@dataclass(slots=True)
class JobOptions:
    delay_ms: int = 0
    priority: int = 0  # lower runs first
    max_attempts: int | None = None


@dataclass(slots=True)
class Job:
    """
    One unit of work. Mutated only by the worker holding its lease.

    ``seq`` is the enqueue sequence number used to break ties between jobs
    with the same priority and ``next_run_at``.
    """

    id: str
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    max_attempts: int
    seq: int
    attempts: int = 0
    priority: int = 0
    status: JobStatus = JobStatus.WAITING
    created_at: datetime = field(default_factory=utcnow)
    next_run_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    lease_token: str | None = None
    lease_expires_at: datetime | None = None
    result: Any = None
    last_error: str | None = None
    duration_ms: float | None = None

    @property
    def sort_key(self) -> tuple[int, datetime, int]:
        return (self.priority, self.next_run_at, self.seq)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for name in ("created_at", "next_run_at", "started_at", "finished_at", "lease_expires_at"):
            value = data[name]
            data[name] = value.isoformat() if value else None
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            queue_name=data["queue_name"],
            job_type=data["job_type"],
            payload=data.get("payload") or {},
            max_attempts=int(data["max_attempts"]),
            seq=int(data["seq"]),
            attempts=int(data.get("attempts", 0)),
            priority=int(data.get("priority", 0)),
            status=JobStatus(data.get("status", JobStatus.WAITING)),
            created_at=_dt(data.get("created_at")) or utcnow(),
            next_run_at=_dt(data.get("next_run_at")) or utcnow(),
            started_at=_dt(data.get("started_at")),
            finished_at=_dt(data.get("finished_at")),
            lease_token=data.get("lease_token"),
            lease_expires_at=_dt(data.get("lease_expires_at")),
            result=data.get("result"),
            last_error=data.get("last_error"),
            duration_ms=data.get("duration_ms"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls.from_dict(json.loads(raw))


@dataclass(slots=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0  # dead-lettered
    delayed: int = 0
    paused: bool = False

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed

    def to_dict(self) -> dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
            "total": self.total,
        }
