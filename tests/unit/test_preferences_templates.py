import json

import pytest

from bouncer.errors import ValidationError
from bouncer.notifications.models import (
    Channel,
    NotificationJob,
    Priority,
    calculate_notification_priority,
)
from bouncer.notifications.preferences import (
    NotificationPreferences,
    PreferenceUpdate,
    RedisPreferenceStore,
    merge_preferences,
)
from bouncer.notifications.templates import GENERIC_MESSAGE, render, substitute, truncate


def test_merge_keeps_base_values_for_unset_fields():
    base = NotificationPreferences(max_frequency=10)
    merged = merge_preferences(base, PreferenceUpdate(quiet_hours_start="23:00"))

    assert merged.quiet_hours_start == "23:00"
    assert merged.quiet_hours_end == "08:00"
    assert merged.max_frequency == 10


def test_merge_combines_channel_maps_key_by_key():
    base = NotificationPreferences()
    merged = merge_preferences(base, PreferenceUpdate(channels={Channel.SLACK: True}))

    assert merged.is_enabled(Channel.SLACK) is True
    assert merged.is_enabled(Channel.EMAIL) is True
    assert base.is_enabled(Channel.SLACK) is False


def test_preference_update_rejects_unknown_fields_and_channels():
    with pytest.raises(ValidationError):
        PreferenceUpdate.from_dict({"sms": True})
    with pytest.raises(ValidationError):
        PreferenceUpdate.from_dict({"channels": {"carrier_pigeon": True}})


def test_preferences_validate_clock_and_timezone():
    with pytest.raises(ValidationError):
        NotificationPreferences(quiet_hours_start="10pm")
    with pytest.raises(ValidationError):
        NotificationPreferences(timezone="Mars/Olympus")


@pytest.mark.asyncio
async def test_redis_preference_store_persists_partial_updates(fake_redis):
    store = RedisPreferenceStore(fake_redis)

    await store.update("alice", PreferenceUpdate(channels={Channel.SLACK: True}))
    merged = await store.update("alice", PreferenceUpdate(max_frequency=3))

    assert merged.is_enabled(Channel.SLACK) is True
    assert merged.max_frequency == 3
    assert json.loads(fake_redis.store["bouncer:prefs:alice"]) == {
        "channels": {"slack": True},
        "max_frequency": 3,
    }
    assert (await store.get("bob")).max_frequency == NotificationPreferences().max_frequency


@pytest.mark.asyncio
async def test_unreadable_stored_preferences_fall_back_to_defaults(fake_redis):
    fake_redis.store["bouncer:prefs:alice"] = "{not json"

    prefs = await RedisPreferenceStore(fake_redis).get("alice")

    assert prefs.is_enabled(Channel.EMAIL) is True


def test_substitute_leaves_unknown_placeholders():
    assert substitute("Hi {name}, {missing}", {"name": "Ada"}) == "Hi Ada, {missing}"
    assert substitute("{value}", {"value": None}) == "{value}"


def test_truncate_marks_cut_text():
    text, truncated = truncate("abcdef", 4)
    assert text == "abc…"
    assert truncated is True
    assert truncate("abc", None) == ("abc", False)


def test_render_known_template():
    message = render(
        "high_confidence_alert",
        {"suspect_username": "rea1user", "target_username": "realuser", "confidence": 95},
        Channel.EMAIL,
    )

    assert message.template_id == "high_confidence_alert"
    assert message.subject == "High Confidence Impersonation Alert"
    assert "@rea1user is highly likely impersonating @realuser" in message.body
    assert "Confidence: 95%" in message.body


def test_render_generic_fallback_uses_default_message():
    message = render(None, {}, Channel.EMAIL)

    assert message.template_id == "generic"
    assert message.body == GENERIC_MESSAGE


def test_render_truncates_to_channel_limit():
    message = render("generic", {"message": "x" * 2500}, Channel.DISCORD)

    assert message.truncated is True
    assert len(message.body) == 2000
    assert message.body.endswith("…")

    assert render("generic", {"message": "x" * 2500}, Channel.EMAIL).truncated is False


@pytest.mark.parametrize(
    "score,confidence,expected",
    [
        (0.95, 0.95, Priority.CRITICAL),
        (0.95, 0.85, Priority.HIGH),
        (0.7, 0.8, Priority.HIGH),
        (0.65, 0.9, Priority.MEDIUM),
        (0.5, 0.6, Priority.MEDIUM),
        (0.49, 0.99, Priority.LOW),
    ],
)
def test_notification_priority(score, confidence, expected):
    assert calculate_notification_priority(score, confidence) == expected


def test_notification_job_defaults_delivery_id_from_event():
    job = NotificationJob(
        recipient="alice", channel="slack", priority="high", template_id=None, event_id="evt_9"
    )

    assert job.delivery_id == "evt_9:slack"
    assert job.job_type == "send_slack"
    assert NotificationJob.from_dict(job.to_dict()) == job


def test_notification_job_from_dict_rejects_bad_channel():
    with pytest.raises(ValidationError):
        NotificationJob.from_dict({"recipient": "alice", "channel": "fax"})
    with pytest.raises(ValidationError):
        NotificationJob.from_dict({"recipient": "", "channel": "email"})
