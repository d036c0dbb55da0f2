import asyncio
from datetime import datetime, timezone

import pytest

from vauth.service import events
from vauth.service.attempts import FailedAttemptTracker
from vauth.service.events import (
    DeviceTopicDelivery,
    EventNotifier,
    LocalBroadcast,
    TokenDelivery,
    device_topic,
)


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class ExplodingCache:
    async def publish(self, channel, payload):
        raise ConnectionError("redis down")

    async def record_failed_attempt(self, subject, window_seconds, *, now=None):
        raise ConnectionError("redis down")

    async def clear_failed_attempts(self, subject):
        raise ConnectionError("redis down")


class GatedCache:
    """Publishes only once ``release`` is set, like a Redis that stopped answering."""

    def __init__(self):
        self.release = asyncio.Event()
        self.published = []

    async def publish(self, channel, payload):
        await self.release.wait()
        self.published.append((channel, payload))
        return 1


class RecordingCache:
    def __init__(self):
        self.published = []
        self.counts = {}

    async def publish(self, channel, payload):
        self.published.append((channel, payload))
        return 1

    async def record_failed_attempt(self, subject, window_seconds, *, now=None):
        self.counts[subject] = self.counts.get(subject, 0) + 1
        return self.counts[subject]

    async def clear_failed_attempts(self, subject):
        self.counts.pop(subject, None)


class TestLocalBroadcast:
    async def test_fan_out_per_topic(self):
        broadcast = LocalBroadcast()
        admin_a = broadcast.subscribe("admin")
        admin_b = broadcast.subscribe("admin")
        device = broadcast.subscribe(device_topic("VAUTH-X"))

        delivered = broadcast.publish("admin", {"event": "ping"})

        assert delivered == 2
        assert _drain(admin_a) == [{"event": "ping"}]
        assert _drain(admin_b) == [{"event": "ping"}]
        assert _drain(device) == []

    async def test_full_queue_drops_for_slow_subscriber_only(self):
        broadcast = LocalBroadcast(max_queue_size=1)
        slow = broadcast.subscribe("admin")
        broadcast.publish("admin", {"event": "first"})
        fast = broadcast.subscribe("admin")

        delivered = broadcast.publish("admin", {"event": "second"})

        assert delivered == 1
        assert _drain(slow) == [{"event": "first"}]
        assert _drain(fast) == [{"event": "second"}]

    async def test_unsubscribe(self):
        broadcast = LocalBroadcast()
        queue = broadcast.subscribe("admin")
        broadcast.unsubscribe("admin", queue)
        assert broadcast.subscriber_count("admin") == 0
        assert broadcast.publish("admin", {"event": "x"}) == 0


class TestEventNotifier:
    async def test_publish_adds_event_and_timestamp(self):
        fixed = datetime(2024, 5, 1, tzinfo=timezone.utc)
        broadcast = LocalBroadcast()
        queue = broadcast.subscribe("admin")
        notifier = EventNotifier(broadcast, clock=lambda: fixed)

        await notifier.publish(events.TOKEN_ISSUED, {"token_id": "t1"})

        assert _drain(queue) == [
            {"event": "token-issued", "timestamp": fixed.isoformat(), "token_id": "t1"}
        ]

    async def test_publish_mirrors_to_cache_channel(self):
        cache = RecordingCache()
        notifier = EventNotifier(LocalBroadcast(), cache)

        await notifier.publish(events.USER_LOGOUT, {"session_id": "s1"})
        await notifier.drain()

        channel, payload = cache.published[0]
        assert channel == "vauth:admin"
        assert payload["event"] == "user-logout"

    async def test_publish_never_raises(self):
        notifier = EventNotifier(LocalBroadcast(), ExplodingCache())
        await notifier.publish(events.TOKEN_VERIFIED, {"token_id": "t1"})
        await notifier.drain()

    async def test_slow_cache_does_not_delay_publish(self):
        cache = GatedCache()
        broadcast = LocalBroadcast()
        admin = broadcast.subscribe("admin")
        notifier = EventNotifier(broadcast, cache)

        await asyncio.wait_for(notifier.publish(events.TOKEN_VERIFIED, {"token_id": "t1"}), 0.5)

        assert _drain(admin)[0]["token_id"] == "t1"
        assert notifier.pending == 1
        assert cache.published == []

        cache.release.set()
        await notifier.drain()
        assert cache.published[0][0] == "vauth:admin"

    async def test_drain_gives_up_on_stuck_mirrors(self):
        cache = GatedCache()
        notifier = EventNotifier(LocalBroadcast(), cache)
        await notifier.publish(events.TOKEN_ISSUED, {"token_id": "t1"})

        await asyncio.wait_for(notifier.drain(timeout=0.05), 1.0)

        assert cache.published == []

    async def test_device_topics_are_not_mirrored(self):
        cache = RecordingCache()
        delivery = DeviceTopicDelivery(EventNotifier(LocalBroadcast(), cache))

        await delivery.deliver(
            "VAUTH-DEV00001", "ABC123", datetime(2024, 5, 1, tzinfo=timezone.utc)
        )

        assert delivery.notifier.pending == 0
        assert cache.published == []

    def test_token_delivery_is_abstract(self):
        with pytest.raises(TypeError):
            TokenDelivery()

    async def test_device_delivery_stays_off_admin_topic(self):
        broadcast = LocalBroadcast()
        admin = broadcast.subscribe("admin")
        device = broadcast.subscribe(device_topic("VAUTH-DEV00001"))
        delivery = DeviceTopicDelivery(EventNotifier(broadcast))

        await delivery.deliver(
            "VAUTH-DEV00001", "ABC123", datetime(2024, 5, 1, tzinfo=timezone.utc)
        )

        assert _drain(admin) == []
        message = _drain(device)[0]
        assert message["event"] == "token-delivered"
        assert message["token"] == "ABC123"


class TestFailedAttemptTracker:
    async def test_alert_published_at_threshold(self):
        broadcast = LocalBroadcast()
        queue = broadcast.subscribe("admin")
        tracker = FailedAttemptTracker(
            EventNotifier(broadcast), threshold=3, window_seconds=900, clock=lambda: 1000.0
        )

        counts = [await tracker.record_failure("alice", kind="login", ip="1.2.3.4") for _ in range(3)]

        assert counts == [1, 2, 3]
        alerts = [m for m in _drain(queue) if m["event"] == "security-alert"]
        assert len(alerts) == 1
        assert alerts[0]["type"] == "MULTIPLE_FAILED_LOGINS"
        assert alerts[0]["subject"] == "alice"
        assert alerts[0]["attempts"] == 3
        assert alerts[0]["last_ip"] == "1.2.3.4"

    async def test_token_failures_use_token_alert_type(self):
        broadcast = LocalBroadcast()
        queue = broadcast.subscribe("admin")
        tracker = FailedAttemptTracker(EventNotifier(broadcast), threshold=1)

        await tracker.record_failure("alice", kind="token")

        assert _drain(queue)[0]["type"] == "MULTIPLE_FAILED_TOKENS"

    async def test_window_rolls_off_old_attempts(self):
        now = [0.0]
        tracker = FailedAttemptTracker(None, threshold=3, window_seconds=60, clock=lambda: now[0])

        await tracker.record_failure("alice")
        await tracker.record_failure("alice")
        now[0] = 61.0
        count = await tracker.record_failure("alice")

        assert count == 1
        assert tracker.attempts("alice") == 1

    async def test_stale_subjects_are_evicted(self):
        now = [0.0]
        tracker = FailedAttemptTracker(None, window_seconds=60, clock=lambda: now[0])
        await tracker.record_failure("alice")
        now[0] = 120.0
        await tracker.record_failure("bob")
        assert "alice" not in tracker._attempts

    async def test_clear_resets_subject(self):
        tracker = FailedAttemptTracker(None)
        await tracker.record_failure("alice")
        await tracker.clear("alice")
        assert tracker.attempts("alice") == 0

    async def test_cache_backed_counts(self):
        cache = RecordingCache()
        tracker = FailedAttemptTracker(None, cache=cache)
        await tracker.record_failure("alice")
        assert await tracker.record_failure("alice") == 2
        await tracker.clear("alice")
        assert "alice" not in cache.counts

    async def test_cache_failure_falls_back_to_local(self):
        tracker = FailedAttemptTracker(None, cache=ExplodingCache())
        assert await tracker.record_failure("alice") == 1
        await tracker.clear("alice")
