"""
Notification dispatcher.

Steps for each job:
1. Return the recorded result if this delivery id was already delivered
2. Pick the channel (downgrade when the requested one is disabled)
3. Defer during quiet hours unless critical
4. Throttle per (recipient, channel) unless critical
5. Render the template and hand it to the channel adapter
"""

import json
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime

from bouncer.config import settings
from bouncer.errors import is_retryable
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.middleware.rate_limiter import RateLimiter, rate_limiter
from bouncer.notifications.channels import ChannelAdapter
from bouncer.notifications.models import (
    CHANNEL_PRIORITY,
    Channel,
    DeliveryResult,
    NotificationJob,
    Priority,
)
from bouncer.notifications.preferences import NotificationPreferences, PreferenceStore
from bouncer.notifications.templates import render
from bouncer.services.infrastructure.redis_client import redis_client

logger = get_logger(__name__)


class NotificationDispatcher:
    DELIVERY_KEY_PREFIX = "bouncer:delivery"

    def __init__(
        self,
        preferences: PreferenceStore,
        adapters: Mapping[Channel, ChannelAdapter],
        limiter: RateLimiter | None = None,
        delivery_store=None,
        throttle_window_seconds: int | None = None,
        delivery_ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.preferences = preferences
        self.adapters = dict(adapters)
        self.limiter = limiter or rate_limiter
        self.delivery_store = delivery_store or redis_client
        self.throttle_window_seconds = (
            throttle_window_seconds or settings.NOTIFICATION_THROTTLE_WINDOW_SECONDS
        )
        self.delivery_ttl_seconds = (
            delivery_ttl_seconds or settings.NOTIFICATION_DELIVERY_RECORD_TTL_SECONDS
        )
        self._clock = clock

    @staticmethod
    def select_channel(requested: Channel, preferences: NotificationPreferences) -> Channel | None:
        if preferences.is_enabled(requested):
            return requested
        for channel in CHANNEL_PRIORITY:
            if preferences.is_enabled(channel):
                return channel
        return None

    def _delivery_key(self, delivery_id: str) -> str:
        return f"{self.DELIVERY_KEY_PREFIX}:{delivery_id}"

    async def _recorded_delivery(self, delivery_id: str) -> DeliveryResult | None:
        raw = await self.delivery_store.get(self._delivery_key(delivery_id))
        if not raw:
            return None
        return DeliveryResult.from_dict(json.loads(raw))

    async def _record_delivery(self, delivery_id: str, result: DeliveryResult) -> None:
        stored = await self.delivery_store.set_with_ttl(
            self._delivery_key(delivery_id),
            json.dumps(result.to_dict()),
            self.delivery_ttl_seconds,
        )
        if not stored:
            logger.warning("Delivery record not stored", delivery_id=delivery_id)

    async def dispatch(self, job: NotificationJob) -> DeliveryResult:
        log = logger.bind(
            recipient=job.recipient,
            channel=job.channel.value,
            priority=job.priority.value,
            delivery_id=job.delivery_id,
        )

        recorded = await self._recorded_delivery(job.delivery_id)
        if recorded is not None:
            log.info("Notification already delivered")
            return replace(recorded, duplicate=True)

        preferences = await self.preferences.get(job.recipient)
        channel = self.select_channel(job.channel, preferences)
        if channel is None:
            log.warning("No enabled channel for recipient, dropping notification")
            return DeliveryResult(
                success=False, retryable=False, error="no_enabled_channel", dropped=True
            )
        if channel != job.channel:
            log.info("Notification channel downgraded", selected_channel=channel.value)

        if job.priority != Priority.CRITICAL:
            remaining = preferences.quiet_seconds_remaining(self._clock())
            if remaining > 0:
                log.info("Notification deferred for quiet hours", deferred_seconds=remaining)
                return DeliveryResult(
                    success=False,
                    retryable=False,
                    channel=channel,
                    error="quiet_hours",
                    deferred_seconds=remaining,
                )

            throttle = await self.limiter.check_limit(
                f"notify:{job.recipient}:{channel.value}",
                preferences.max_frequency,
                self.throttle_window_seconds,
            )
            if not throttle.allowed:
                log.warning(
                    "Notification throttled",
                    event_type="notification_throttled",
                    count=throttle.count,
                    limit=throttle.limit,
                )
                return DeliveryResult(
                    success=False,
                    retryable=False,
                    channel=channel,
                    error="throttled",
                    throttled=True,
                    dropped=True,
                )

        adapter = self.adapters.get(channel)
        if adapter is None:
            log.error("No adapter configured for channel", selected_channel=channel.value)
            return DeliveryResult(
                success=False, retryable=False, channel=channel, error="no_adapter"
            )

        message = render(job.template_id, job.data, channel)
        try:
            message_id = await adapter.send(
                job.recipient, message.subject, message.body, delivery_id=job.delivery_id
            )
        except Exception as e:
            retryable = is_retryable(e)
            log.error(
                "Notification delivery failed",
                error=str(e),
                error_type=type(e).__name__,
                retryable=retryable,
            )
            return DeliveryResult(
                success=False, retryable=retryable, channel=channel, error=str(e)
            )

        result = DeliveryResult(
            success=True,
            channel=channel,
            message_id=message_id,
            delivered_at=self._clock(),
        )
        await self._record_delivery(job.delivery_id, result)
        log.info(
            "Notification delivered",
            message_id=message_id,
            template_id=message.template_id,
            truncated=message.truncated,
        )
        return result
