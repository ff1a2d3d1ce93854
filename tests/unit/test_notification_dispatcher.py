from datetime import UTC, datetime

import pytest

from bouncer.errors import PermanentRejectionError, TransientUpstreamError
from bouncer.jobs.notification_jobs import NotificationJobs
from bouncer.middleware.rate_limiter import RateLimiter
from bouncer.notifications.channels import LogChannelAdapter
from bouncer.notifications.dispatcher import NotificationDispatcher
from bouncer.notifications.models import Channel, NotificationJob, Priority
from bouncer.notifications.preferences import (
    InMemoryPreferenceStore,
    NotificationPreferences,
    PreferenceUpdate,
)
from bouncer.queues.models import Job

NOON = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
LATE_EVENING = datetime(2024, 5, 1, 23, 0, tzinfo=UTC)


class FailingAdapter:
    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def send(self, recipient, subject, body, *, delivery_id):
        self.calls += 1
        raise self.error


@pytest.fixture
def adapters():
    return {channel: LogChannelAdapter(channel) for channel in Channel}


@pytest.fixture
def preferences():
    return InMemoryPreferenceStore()


@pytest.fixture
def make_dispatcher(fake_redis, adapters, preferences):
    def _make(now=NOON):
        return NotificationDispatcher(
            preferences,
            adapters,
            limiter=RateLimiter(store=fake_redis, clock=lambda: now.timestamp()),
            delivery_store=fake_redis,
            throttle_window_seconds=3600,
            delivery_ttl_seconds=3600,
            clock=lambda: now,
        )

    return _make


def job(**overrides):
    fields = {
        "recipient": "alice",
        "channel": Channel.EMAIL,
        "priority": Priority.MEDIUM,
        "template_id": "impersonation_detected",
        "data": {"suspect_username": "rea1user", "score": 0.85},
        "event_id": "evt_1",
    }
    fields.update(overrides)
    return NotificationJob(**fields)


@pytest.mark.asyncio
async def test_delivers_on_requested_channel(make_dispatcher, adapters, fake_redis):
    result = await make_dispatcher().dispatch(job())

    assert result.success is True
    assert result.channel == Channel.EMAIL
    assert result.message_id.startswith("email_")
    sent = adapters[Channel.EMAIL].sent
    assert len(sent) == 1
    assert sent[0]["subject"] == "Potential Impersonation Detected"
    assert "@rea1user" in sent[0]["body"]
    assert "bouncer:delivery:evt_1:email" in fake_redis.store


@pytest.mark.asyncio
async def test_disabled_channel_downgrades_to_email(make_dispatcher, adapters):
    result = await make_dispatcher().dispatch(job(channel=Channel.SLACK))

    assert result.success is True
    assert result.channel == Channel.EMAIL
    assert len(adapters[Channel.SLACK].sent) == 0
    assert len(adapters[Channel.EMAIL].sent) == 1


@pytest.mark.asyncio
async def test_downgrade_follows_channel_order(make_dispatcher, preferences, adapters):
    await preferences.update(
        "alice",
        PreferenceUpdate(channels={Channel.EMAIL: False, Channel.DISCORD: True}),
    )

    result = await make_dispatcher().dispatch(job(channel=Channel.WEBHOOK))

    assert result.channel == Channel.DM


@pytest.mark.asyncio
async def test_all_channels_disabled_drops(make_dispatcher, preferences):
    await preferences.update("alice", PreferenceUpdate(channels={c: False for c in Channel}))

    result = await make_dispatcher().dispatch(job())

    assert result.success is False
    assert result.retryable is False
    assert result.dropped is True
    assert result.error == "no_enabled_channel"


@pytest.mark.asyncio
async def test_quiet_hours_defer_until_window_ends(make_dispatcher, adapters):
    result = await make_dispatcher(now=LATE_EVENING).dispatch(job())

    assert result.success is False
    assert result.deferred is True
    assert result.deferred_seconds == 9 * 3600
    assert len(adapters[Channel.EMAIL].sent) == 0


@pytest.mark.asyncio
async def test_quiet_hours_use_recipient_timezone(make_dispatcher, preferences):
    # 23:00 UTC is 19:00 in New York during daylight saving time
    await preferences.update("alice", PreferenceUpdate(timezone="America/New_York"))

    result = await make_dispatcher(now=LATE_EVENING).dispatch(job())

    assert result.success is True


@pytest.mark.asyncio
async def test_critical_bypasses_quiet_hours(make_dispatcher):
    result = await make_dispatcher(now=LATE_EVENING).dispatch(job(priority=Priority.CRITICAL))

    assert result.success is True


@pytest.mark.asyncio
async def test_throttle_drops_after_max_frequency(make_dispatcher, preferences):
    await preferences.update("alice", PreferenceUpdate(max_frequency=2))
    dispatcher = make_dispatcher()

    results = [await dispatcher.dispatch(job(event_id=f"evt_{i}")) for i in range(3)]

    assert [r.success for r in results] == [True, True, False]
    assert results[2].throttled is True
    assert results[2].dropped is True
    assert results[2].retryable is False


@pytest.mark.asyncio
async def test_critical_bypasses_throttle(make_dispatcher, preferences):
    await preferences.update("alice", PreferenceUpdate(max_frequency=1))
    dispatcher = make_dispatcher()

    results = [
        await dispatcher.dispatch(job(event_id=f"evt_{i}", priority=Priority.CRITICAL))
        for i in range(3)
    ]

    assert all(r.success for r in results)


@pytest.mark.asyncio
async def test_throttle_counts_per_channel(make_dispatcher, preferences):
    await preferences.update(
        "alice", PreferenceUpdate(max_frequency=1, channels={Channel.SLACK: True})
    )
    dispatcher = make_dispatcher()

    email = await dispatcher.dispatch(job(event_id="evt_a"))
    slack = await dispatcher.dispatch(job(event_id="evt_b", channel=Channel.SLACK))

    assert email.success is True
    assert slack.success is True


@pytest.mark.asyncio
async def test_unknown_template_renders_generic(make_dispatcher, adapters):
    result = await make_dispatcher().dispatch(
        job(template_id="does_not_exist", data={"message": "Check your mentions"})
    )

    assert result.success is True
    sent = adapters[Channel.EMAIL].sent[0]
    assert sent["subject"] == "Bouncer Notification"
    assert sent["body"] == "Check your mentions"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,retryable",
    [
        (TransientUpstreamError("503 from provider"), True),
        (PermanentRejectionError("unknown mailbox"), False),
        (RuntimeError("socket closed"), True),
    ],
)
async def test_adapter_failures_are_classified(make_dispatcher, adapters, error, retryable):
    adapters[Channel.EMAIL] = FailingAdapter(error)

    result = await make_dispatcher().dispatch(job())

    assert result.success is False
    assert result.retryable is retryable
    assert result.error == str(error)


@pytest.mark.asyncio
async def test_missing_adapter_is_not_retried(make_dispatcher, adapters):
    del adapters[Channel.EMAIL]

    result = await make_dispatcher().dispatch(job())

    assert result.success is False
    assert result.retryable is False
    assert result.error == "no_adapter"


@pytest.mark.asyncio
async def test_redelivery_of_same_delivery_id_is_not_sent_twice(make_dispatcher, adapters):
    dispatcher = make_dispatcher()

    first = await dispatcher.dispatch(job())
    second = await dispatcher.dispatch(job())

    assert second.success is True
    assert second.duplicate is True
    assert second.message_id == first.message_id
    assert len(adapters[Channel.EMAIL].sent) == 1


@pytest.mark.asyncio
async def test_failed_delivery_is_not_recorded(make_dispatcher, adapters, fake_redis):
    adapters[Channel.EMAIL] = FailingAdapter(TransientUpstreamError("timeout"))

    await make_dispatcher().dispatch(job())

    assert "bouncer:delivery:evt_1:email" not in fake_redis.store


def test_preferences_quiet_window_inside_same_day():
    prefs = NotificationPreferences(quiet_hours_start="09:00", quiet_hours_end="17:00")

    assert prefs.quiet_seconds_remaining(NOON) == 5 * 3600
    assert prefs.quiet_seconds_remaining(LATE_EVENING) == 0


@pytest.mark.asyncio
async def test_retried_queue_job_without_event_id_is_sent_once(make_dispatcher, adapters):
    handlers = NotificationJobs(orchestrator=None, dispatcher=make_dispatcher())
    queued = Job(
        id="notification:000000000007",
        queue_name="notification",
        job_type="send_email",
        payload={
            "recipient": "alice",
            "channel": "email",
            "priority": "medium",
            "template_id": None,
            "data": {"message": "Weekly digest"},
        },
        max_attempts=3,
        seq=7,
    )

    first = await handlers.send(queued)
    queued.attempts = 1
    second = await handlers.send(queued)

    assert second["duplicate"] is True
    assert second["message_id"] == first["message_id"]
    assert len(adapters[Channel.EMAIL].sent) == 1


def test_delivery_id_falls_back_to_the_queue_job_id():
    payload = {"recipient": "alice", "channel": "dm", "priority": "low"}

    first = NotificationJob.from_dict(payload, origin_id="notification:000000000007")
    again = NotificationJob.from_dict(payload, origin_id="notification:000000000007")

    assert first.delivery_id == again.delivery_id == "notification:000000000007:dm"
