"""
Recipient notification preferences.

Stored preferences are partial updates layered over the defaults with
``merge_preferences``: a field set in the update wins, a field left as None
keeps the base value, and the channel map merges key by key.
"""

import json
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, time, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bouncer.config import settings
from bouncer.errors import ValidationError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.notifications.models import Channel
from bouncer.services.infrastructure.redis_client import RedisClient, redis_client

logger = get_logger(__name__)


def _default_channels() -> dict[Channel, bool]:
    return {
        Channel.EMAIL: True,
        Channel.DM: True,
        Channel.SLACK: False,
        Channel.DISCORD: False,
        Channel.WEBHOOK: False,
    }


def parse_clock(value: str) -> time:
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError):
        raise ValidationError(f"Expected HH:MM, got {value!r}") from None


@dataclass(slots=True)
class NotificationPreferences:
    channels: dict[Channel, bool] = field(default_factory=_default_channels)
    quiet_hours_enabled: bool = True
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    timezone: str = "UTC"
    max_frequency: int = field(default_factory=lambda: settings.NOTIFICATION_DEFAULT_MAX_PER_HOUR)

    def __post_init__(self):
        parse_clock(self.quiet_hours_start)
        parse_clock(self.quiet_hours_end)
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown timezone {self.timezone!r}") from None
        if self.max_frequency < 0:
            raise ValidationError("max_frequency cannot be negative")

    def is_enabled(self, channel: Channel) -> bool:
        return self.channels.get(channel, False)

    def quiet_seconds_remaining(self, now: datetime) -> float:
        """
        Seconds until quiet hours end, or 0 when ``now`` is outside them.

        Windows where start > end wrap midnight (22:00-08:00).
        """
        if not self.quiet_hours_enabled:
            return 0.0

        start = parse_clock(self.quiet_hours_start)
        end = parse_clock(self.quiet_hours_end)
        if start == end:
            return 0.0

        local = now.astimezone(ZoneInfo(self.timezone))
        clock = local.time().replace(tzinfo=None)

        if start < end:
            inside = start <= clock < end
        else:
            inside = clock >= start or clock < end
        if not inside:
            return 0.0

        end_at = local.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
        if end_at <= local:
            end_at += timedelta(days=1)
        return (end_at - local).total_seconds()


@dataclass(slots=True)
class PreferenceUpdate:
    """Partial preferences. None means "keep the current value"."""

    channels: dict[Channel, bool] | None = None
    quiet_hours_enabled: bool | None = None
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    timezone: str | None = None
    max_frequency: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PreferenceUpdate":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown preference fields: {sorted(unknown)}")

        channels = data.get("channels")
        if channels is not None:
            try:
                channels = {Channel(name): bool(enabled) for name, enabled in channels.items()}
            except (ValueError, AttributeError) as e:
                raise ValidationError(f"Invalid channel preferences: {e}") from e
        return cls(**{**data, "channels": channels})

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if self.channels is not None:
            data["channels"] = {channel.value: enabled for channel, enabled in self.channels.items()}
        return {key: value for key, value in data.items() if value is not None}


def merge_preferences(
    base: NotificationPreferences, update: PreferenceUpdate | None
) -> NotificationPreferences:
    if update is None:
        return replace(base, channels=dict(base.channels))

    changes: dict[str, Any] = {}
    for f in fields(update):
        value = getattr(update, f.name)
        if value is None:
            continue
        if f.name == "channels":
            value = {**base.channels, **value}
        changes[f.name] = value

    merged = replace(base, **changes)
    if "channels" not in changes:
        merged.channels = dict(base.channels)
    return merged


class PreferenceStore(Protocol):
    async def get(self, recipient: str) -> NotificationPreferences: ...

    async def update(self, recipient: str, update: PreferenceUpdate) -> NotificationPreferences: ...


class InMemoryPreferenceStore:
    def __init__(self, defaults: NotificationPreferences | None = None):
        self.defaults = defaults or NotificationPreferences()
        self._updates: dict[str, PreferenceUpdate] = {}

    async def get(self, recipient: str) -> NotificationPreferences:
        return merge_preferences(self.defaults, self._updates.get(recipient))

    async def update(self, recipient: str, update: PreferenceUpdate) -> NotificationPreferences:
        current = self._updates.get(recipient) or PreferenceUpdate()
        combined = PreferenceUpdate.from_dict({**current.to_dict(), **update.to_dict()})
        if current.channels and update.channels:
            combined.channels = {**current.channels, **update.channels}
        merged = merge_preferences(self.defaults, combined)
        self._updates[recipient] = combined
        return merged


class RedisPreferenceStore:
    """Stores each recipient's partial update as JSON under one key."""

    KEY_PREFIX = "bouncer:prefs"

    def __init__(self, client: RedisClient | None = None, defaults: NotificationPreferences | None = None):
        self.redis = client or redis_client
        self.defaults = defaults or NotificationPreferences()

    def _key(self, recipient: str) -> str:
        return f"{self.KEY_PREFIX}:{recipient}"

    async def _load(self, recipient: str) -> PreferenceUpdate | None:
        raw = await self.redis.get(self._key(recipient))
        if not raw:
            return None
        try:
            return PreferenceUpdate.from_dict(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable preferences", recipient=recipient, error=str(e))
            return None

    async def get(self, recipient: str) -> NotificationPreferences:
        return merge_preferences(self.defaults, await self._load(recipient))

    async def update(self, recipient: str, update: PreferenceUpdate) -> NotificationPreferences:
        current = await self._load(recipient) or PreferenceUpdate()
        stored = {**current.to_dict(), **update.to_dict()}
        if current.channels and update.channels:
            stored["channels"] = {
                **current.to_dict()["channels"],
                **update.to_dict()["channels"],
            }
        combined = PreferenceUpdate.from_dict(stored)
        merged = merge_preferences(self.defaults, combined)
        await self.redis.set_with_ttl(self._key(recipient), json.dumps(combined.to_dict()))
        return merged
