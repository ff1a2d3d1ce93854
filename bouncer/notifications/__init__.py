from bouncer.notifications.dispatcher import NotificationDispatcher
from bouncer.notifications.models import (
    Channel,
    DeliveryResult,
    NotificationJob,
    Priority,
    calculate_notification_priority,
)
from bouncer.notifications.preferences import (
    NotificationPreferences,
    PreferenceUpdate,
    merge_preferences,
)

__all__ = [
    "Channel",
    "DeliveryResult",
    "NotificationDispatcher",
    "NotificationJob",
    "NotificationPreferences",
    "PreferenceUpdate",
    "Priority",
    "calculate_notification_priority",
    "merge_preferences",
]
