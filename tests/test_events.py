"""Tests for per-user progress events."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

from api.events import EventChannel, build_progress_event, channel_name


class TestBuildProgressEvent:
    def test_minimal_payload(self):
        assert build_progress_event(5, "failed", "AI Analysis Failed.") == {
            "videoId": 5,
            "status": "failed",
            "msg": "AI Analysis Failed.",
        }

    def test_full_payload(self):
        payload = build_progress_event(5, "completed", "done", progress=100, sensitivity="safe", reason="")
        assert payload == {
            "videoId": 5,
            "status": "completed",
            "progress": 100,
            "msg": "done",
            "sensitivity": "safe",
            "reason": "",
        }

    def test_channel_name(self):
        assert channel_name(42) == "pulse:user:42"


class TestLocalDelivery:
    async def test_event_reaches_only_its_user(self):
        channel = EventChannel(use_redis=False)
        alice = await channel.connect(1)
        bob = await channel.connect(2)

        await channel.emit(1, {"videoId": 9, "status": "processing"})

        assert await alice.next_event(timeout=0.1) == {"videoId": 9, "status": "processing"}
        assert await bob.next_event(timeout=0.05) is None

    async def test_every_connection_of_a_user_receives(self):
        channel = EventChannel(use_redis=False)
        tab_one = await channel.connect(1)
        tab_two = await channel.connect(1)

        await channel.emit(1, {"videoId": 1})

        assert await tab_one.next_event(timeout=0.1) == {"videoId": 1}
        assert await tab_two.next_event(timeout=0.1) == {"videoId": 1}
        assert channel.connection_count(1) == 2

    async def test_emit_without_connections_is_dropped(self):
        channel = EventChannel(use_redis=False)
        await channel.emit(7, {"videoId": 1})
        late = await channel.connect(7)
        assert await late.next_event(timeout=0.05) is None

    async def test_full_queue_drops_events(self):
        channel = EventChannel(use_redis=False, queue_size=1)
        subscription = await channel.connect(1)

        await channel.emit(1, {"n": 1})
        await channel.emit(1, {"n": 2})

        assert await subscription.next_event(timeout=0.1) == {"n": 1}
        assert await subscription.next_event(timeout=0.05) is None

    async def test_disconnect(self):
        channel = EventChannel(use_redis=False)
        subscription = await channel.connect(1)

        await channel.disconnect(subscription)
        await channel.emit(1, {"n": 1})

        assert channel.connection_count() == 0
        assert subscription.closed
        # Disconnecting twice is harmless
        await channel.disconnect(subscription)

    async def test_aclose_closes_all(self):
        channel = EventChannel(use_redis=False)
        first = await channel.connect(1)
        second = await channel.connect(2)

        await channel.aclose()

        assert channel.connection_count() == 0
        assert first.closed and second.closed


class TestRedisDelivery:
    async def test_emit_publishes(self):
        redis = MagicMock()
        redis.publish = AsyncMock()
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=redis)):
            await channel.emit(3, {"videoId": 1})

        redis.publish.assert_awaited_once_with("pulse:user:3", json.dumps({"videoId": 1}))

    async def test_publish_failure_falls_back_to_local(self):
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=ConnectionError("down"))
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=None)):
            local = await channel.connect(3)
        with patch("api.events.get_redis", AsyncMock(return_value=redis)), patch(
            "api.events.report_redis_failure", AsyncMock()
        ) as report:
            await channel.emit(3, {"videoId": 1})

        report.assert_awaited_once()
        assert await local.next_event(timeout=0.1) == {"videoId": 1}

    async def test_subscription_reads_pubsub_messages(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock(
            side_effect=[
                {"type": "message", "data": json.dumps({"videoId": 4})},
                {"type": "message", "data": "not json"},
                None,
            ]
        )
        redis = MagicMock()
        redis.pubsub.return_value = pubsub
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=redis)):
            subscription = await channel.connect(4)

        assert subscription.uses_redis
        pubsub.subscribe.assert_awaited_once_with("pulse:user:4")
        assert await subscription.next_event(timeout=0.1) == {"videoId": 4}
        assert await subscription.next_event(timeout=0.1) is None
        assert await subscription.next_event(timeout=0.1) is None

        await channel.disconnect(subscription)
        pubsub.unsubscribe.assert_awaited_once_with("pulse:user:4")

    async def test_local_connection_receives_after_redis_recovers(self):
        redis = MagicMock()
        redis.publish = AsyncMock()
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=None)):
            local = await channel.connect(3)
        with patch("api.events.get_redis", AsyncMock(return_value=redis)):
            await channel.emit(3, {"videoId": 1, "status": "processing"})

        redis.publish.assert_awaited_once()
        assert await local.next_event(timeout=0.1) == {"videoId": 1, "status": "processing"}

    async def test_publish_failure_reaches_redis_connections(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.get_message = AsyncMock(return_value=None)
        healthy = MagicMock()
        healthy.pubsub.return_value = pubsub
        broken = MagicMock()
        broken.publish = AsyncMock(side_effect=ConnectionError("down"))
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=healthy)):
            subscription = await channel.connect(6)
        with patch("api.events.get_redis", AsyncMock(return_value=broken)), patch(
            "api.events.report_redis_failure", AsyncMock()
        ):
            await channel.emit(6, {"videoId": 8})

        assert subscription.uses_redis
        assert await subscription.next_event(timeout=0.1) == {"videoId": 8}
        pubsub.get_message.assert_not_awaited()

    async def test_published_event_is_not_queued_for_redis_connections(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.get_message = AsyncMock(return_value=None)
        redis = MagicMock()
        redis.pubsub.return_value = pubsub
        redis.publish = AsyncMock()
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=redis)):
            subscription = await channel.connect(6)
            await channel.emit(6, {"videoId": 8})

        # Only the pubsub copy would arrive; the mock delivers none
        assert await subscription.next_event(timeout=0.1) is None

    async def test_redis_unavailable_uses_local_queue(self):
        channel = EventChannel(use_redis=True)

        with patch("api.events.get_redis", AsyncMock(return_value=None)):
            subscription = await channel.connect(5)
            await channel.emit(5, {"videoId": 2})

        assert not subscription.uses_redis
        assert await subscription.next_event(timeout=0.1) == {"videoId": 2}
