"""
Channel adapters. One ``send`` capability per delivery channel.

Adapters signal failures through the error taxonomy:
``TransientUpstreamError`` for anything worth retrying (its subclass
``RateLimitExceededError`` for a 429 with the provider's Retry-After) and
``PermanentRejectionError`` when the recipient or payload is refused.
"""

import uuid
from collections import deque
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from bouncer.config import settings
from bouncer.errors import (
    PermanentRejectionError,
    RateLimitExceededError,
    TransientUpstreamError,
)
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.notifications.models import Channel

logger = get_logger(__name__)

RETRY_STATUS_CODES = {408, 429}
LOG_HISTORY_SIZE = 100


class ChannelAdapter(Protocol):
    channel: Channel

    async def send(self, recipient: str, subject: str | None, body: str, *, delivery_id: str) -> str:
        """Deliver one message and return the provider's message id."""
        ...


def _payload_for(channel: Channel, subject: str | None, body: str, delivery_id: str) -> dict[str, Any]:
    if channel == Channel.SLACK:
        text = f"*{subject}*\n{body}" if subject else body
        return {"text": text}
    if channel == Channel.DISCORD:
        return {"content": body, "embeds": [{"title": subject}] if subject else []}
    return {"subject": subject, "body": body, "delivery_id": delivery_id}


def retry_after_seconds(response: httpx.Response) -> int:
    value = response.headers.get("Retry-After", "").strip()
    return int(value) if value.isdigit() else 0


class WebhookChannelAdapter:
    """
    JSON POST to a recipient URL.

    Serves generic webhooks and Slack/Discord incoming webhooks; only the
    payload shape differs per channel.
    """

    def __init__(
        self,
        channel: Channel = Channel.WEBHOOK,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.channel = Channel(channel)
        self.timeout = timeout or settings.NOTIFICATION_HTTP_TIMEOUT_SECONDS
        self._client = client

    async def send(self, recipient: str, subject: str | None, body: str, *, delivery_id: str) -> str:
        parsed = urlparse(recipient)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise PermanentRejectionError(
                f"Recipient is not a webhook URL: {recipient[:50]}",
                details={"channel": self.channel.value},
            )

        payload = _payload_for(self.channel, subject, body, delivery_id)
        headers = {"Idempotency-Key": delivery_id}

        try:
            if self._client is not None:
                response = await self._client.post(recipient, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(recipient, json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.warning(
                "Webhook delivery request error",
                channel=self.channel.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransientUpstreamError(f"Webhook request failed: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitExceededError(
                "Webhook throttled delivery",
                retry_after=retry_after_seconds(response),
                details={"status_code": status},
            )
        if status in RETRY_STATUS_CODES or status >= 500:
            raise TransientUpstreamError(
                f"Webhook returned {status}", details={"status_code": status}
            )
        if status >= 400:
            raise PermanentRejectionError(
                f"Webhook rejected delivery with {status}", details={"status_code": status}
            )

        message_id = response.headers.get("X-Message-Id")
        logger.debug("Webhook delivered", channel=self.channel.value, status_code=status)
        return message_id or f"{self.channel.value}_{uuid.uuid4().hex[:12]}"


class LogChannelAdapter:
    """
    Development sink: logs the message instead of sending it. The last
    ``history`` messages stay in ``sent`` for inspection.
    """

    def __init__(self, channel: Channel, history: int = LOG_HISTORY_SIZE):
        self.channel = Channel(channel)
        self.sent: deque[dict[str, Any]] = deque(maxlen=history)

    async def send(self, recipient: str, subject: str | None, body: str, *, delivery_id: str) -> str:
        message_id = f"{self.channel.value}_{uuid.uuid4().hex[:12]}"
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "delivery_id": delivery_id,
                "message_id": message_id,
            }
        )
        logger.info(
            "Notification logged",
            channel=self.channel.value,
            recipient=recipient,
            subject=subject,
            body_preview=body[:100],
        )
        return message_id


def default_adapters() -> dict[Channel, ChannelAdapter]:
    return {
        Channel.EMAIL: LogChannelAdapter(Channel.EMAIL),
        Channel.DM: LogChannelAdapter(Channel.DM),
        Channel.SLACK: WebhookChannelAdapter(Channel.SLACK),
        Channel.DISCORD: WebhookChannelAdapter(Channel.DISCORD),
        Channel.WEBHOOK: WebhookChannelAdapter(Channel.WEBHOOK),
    }
