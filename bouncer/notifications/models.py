"""
Notification job and delivery result models.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from bouncer.errors import ValidationError
from bouncer.queues.models import NotificationJobType


class Channel(StrEnum):
    EMAIL = "email"
    SLACK = "slack"
    DISCORD = "discord"
    DM = "dm"
    WEBHOOK = "webhook"


# Fallback order when the requested channel is disabled for a recipient
CHANNEL_PRIORITY = (Channel.EMAIL, Channel.DM, Channel.SLACK, Channel.DISCORD, Channel.WEBHOOK)

CHANNEL_JOB_TYPES = {
    Channel.EMAIL: NotificationJobType.SEND_EMAIL,
    Channel.SLACK: NotificationJobType.SEND_SLACK,
    Channel.DISCORD: NotificationJobType.SEND_DISCORD,
    Channel.DM: NotificationJobType.SEND_DM,
    Channel.WEBHOOK: NotificationJobType.SEND_WEBHOOK,
}


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}


def calculate_notification_priority(score: float, confidence: float) -> Priority:
    if score >= 0.9 and confidence >= 0.9:
        return Priority.CRITICAL
    if score >= 0.7 and confidence >= 0.8:
        return Priority.HIGH
    if score >= 0.5 and confidence >= 0.6:
        return Priority.MEDIUM
    return Priority.LOW


@dataclass(slots=True)
class NotificationJob:
    """
    One message for one recipient on one channel.

    ``delivery_id`` identifies the logical delivery across retries; it
    defaults to ``{event_id}:{channel}`` when the job carries an event id.
    """

    recipient: str
    channel: Channel
    priority: Priority
    template_id: str | None
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str | None = None
    retry_count: int = 0
    delivery_id: str | None = None

    def __post_init__(self):
        if not self.recipient:
            raise ValidationError("Notification job needs a recipient")
        self.channel = Channel(self.channel)
        self.priority = Priority(self.priority)
        if not self.delivery_id:
            self.delivery_id = f"{self.event_id or uuid.uuid4().hex}:{self.channel.value}"

    @property
    def job_type(self) -> NotificationJobType:
        return CHANNEL_JOB_TYPES[self.channel]

    @classmethod
    def from_dict(cls, data: dict[str, Any], origin_id: str | None = None) -> "NotificationJob":
        """
        ``origin_id`` (the queue job id) keys the delivery when the payload
        carries neither ``delivery_id`` nor ``event_id``, so retries of one
        queued job share a delivery id.
        """
        try:
            delivery_id = data.get("delivery_id")
            if not delivery_id and not data.get("event_id") and origin_id:
                delivery_id = f"{origin_id}:{Channel(data['channel']).value}"
            return cls(
                recipient=data.get("recipient") or "",
                channel=Channel(data["channel"]),
                priority=Priority(data.get("priority", Priority.LOW)),
                template_id=data.get("template_id"),
                data=dict(data.get("data") or {}),
                event_id=data.get("event_id"),
                retry_count=int(data.get("retry_count", 0)),
                delivery_id=delivery_id,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid notification job: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "channel": self.channel.value,
            "priority": self.priority.value,
            "template_id": self.template_id,
            "data": self.data,
            "event_id": self.event_id,
            "retry_count": self.retry_count,
            "delivery_id": self.delivery_id,
        }


@dataclass(slots=True)
class DeliveryResult:
    success: bool
    retryable: bool = False
    channel: Channel | None = None
    message_id: str | None = None
    delivered_at: datetime | None = None
    error: str | None = None
    deferred_seconds: float | None = None
    throttled: bool = False
    dropped: bool = False  # intentionally not delivered, do not retry
    duplicate: bool = False

    @property
    def deferred(self) -> bool:
        return self.deferred_seconds is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "retryable": self.retryable,
            "channel": self.channel.value if self.channel else None,
            "message_id": self.message_id,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "error": self.error,
            "deferred_seconds": self.deferred_seconds,
            "throttled": self.throttled,
            "dropped": self.dropped,
            "duplicate": self.duplicate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeliveryResult":
        delivered_at = data.get("delivered_at")
        return cls(
            success=bool(data["success"]),
            retryable=bool(data.get("retryable", False)),
            channel=Channel(data["channel"]) if data.get("channel") else None,
            message_id=data.get("message_id"),
            delivered_at=datetime.fromisoformat(delivered_at) if delivered_at else None,
            error=data.get("error"),
            deferred_seconds=data.get("deferred_seconds"),
            throttled=bool(data.get("throttled", False)),
            dropped=bool(data.get("dropped", False)),
            duplicate=bool(data.get("duplicate", False)),
        )
