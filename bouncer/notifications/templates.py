"""
Message templates.

Rendering is a pure function of template id, data and channel. Unknown
template ids render the generic template, and placeholders without a value
are left as written.
"""

import re
from dataclasses import dataclass
from typing import Any

from bouncer.notifications.models import Channel

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

ELLIPSIS = "…"

CHANNEL_LIMITS: dict[Channel, int | None] = {
    Channel.DISCORD: 2000,
    Channel.DM: 10000,
    Channel.SLACK: 3000,
    Channel.EMAIL: None,
    Channel.WEBHOOK: None,
}

GENERIC_TEMPLATE_ID = "generic"

TEMPLATES: dict[str, tuple[str, str]] = {
    "impersonation_detected": (
        "Potential Impersonation Detected",
        "We detected a potential impersonation attempt targeting your account. "
        "The suspicious account @{suspect_username} appears to be mimicking your profile. "
        "Score: {score}/1.0. Please review and take action if necessary.",
    ),
    "high_confidence_alert": (
        "High Confidence Impersonation Alert",
        "HIGH PRIORITY: Strong evidence of impersonation detected. "
        "Account @{suspect_username} is highly likely impersonating @{target_username}. "
        "Confidence: {confidence}%. Immediate review recommended.",
    ),
    "daily_summary": (
        "Daily Impersonation Detection Summary",
        "Daily Summary: {events_processed} events processed, "
        "{alerts_generated} alerts generated, {actions_required} require review.",
    ),
    GENERIC_TEMPLATE_ID: ("Bouncer Notification", "{message}"),
}

GENERIC_MESSAGE = "You have a new notification from Bouncer."


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    template_id: str
    subject: str
    body: str
    truncated: bool = False


def substitute(text: str, data: dict[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in data and data[key] is not None:
            return str(data[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, text)


def truncate(text: str, limit: int | None) -> tuple[str, bool]:
    if limit is None or len(text) <= limit:
        return text, False
    return text[: limit - 1] + ELLIPSIS, True


def render(template_id: str | None, data: dict[str, Any], channel: Channel) -> RenderedMessage:
    resolved = template_id if template_id in TEMPLATES else GENERIC_TEMPLATE_ID
    subject, body = TEMPLATES[resolved]

    values = dict(data)
    if resolved == GENERIC_TEMPLATE_ID:
        if not values.get("message"):
            values["message"] = GENERIC_MESSAGE
        if data.get("subject"):
            subject = str(data["subject"])

    body, truncated = truncate(substitute(body, values), CHANNEL_LIMITS.get(channel))
    return RenderedMessage(
        template_id=resolved,
        subject=substitute(subject, values),
        body=body,
        truncated=truncated,
    )
