"""Tests for publishing and subscriptions."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from redisync.errors import SubscriptionError
from redisync.executor import BackgroundExecutor
from redisync.pubsub import (
    ChannelMessage,
    MultiChannelSubscription,
    PatternMessage,
    PubSubManager,
)
from tests.unit.fakes import FakeBroker, wait_until


@pytest_asyncio.fixture
async def pubsub(connections: MagicMock) -> AsyncIterator[PubSubManager]:
    """Initialized manager with a short poll interval."""
    executor = BackgroundExecutor(max_concurrency=8)
    manager = PubSubManager(connections, executor, poll_timeout=0.05)
    await manager.initialize()
    yield manager
    await manager.shutdown()
    await executor.shutdown()


class TestMessages:
    """Test message envelopes."""

    def test_channel_message_timestamp(self) -> None:
        """Channel messages are stamped at creation."""
        message = ChannelMessage(channel="chat", message="hi")
        assert message.timestamp_ms > 0
        assert message.to_dict()["channel"] == "chat"

    def test_pattern_message_fields(self) -> None:
        """Pattern messages carry pattern, channel and payload."""
        message = PatternMessage(pattern="news.*", channel="news.eu", message="x", timestamp_ms=5)
        assert message.to_dict() == {
            "pattern": "news.*",
            "channel": "news.eu",
            "message": "x",
            "timestamp_ms": 5,
        }


class TestPublish:
    """Test publishing."""

    async def test_publish_sync_returns_receivers(
        self, pubsub: PubSubManager, broker: FakeBroker
    ) -> None:
        """publish_sync reports how many listeners got the message."""
        assert await pubsub.publish_sync("chat", "nobody listening") == 0

        await pubsub.subscribe("chat", lambda message: None)
        assert await pubsub.publish_sync("chat", "hello") == 1

    async def test_publish_sync_failure_returns_zero(
        self, pubsub: PubSubManager, redis_client: AsyncMock
    ) -> None:
        """Publish errors are logged and reported as zero receivers."""
        redis_client.publish.side_effect = RedisConnectionError("down")
        assert await pubsub.publish_sync("chat", "hello") == 0

    async def test_publish_is_fire_and_forget(
        self, pubsub: PubSubManager, redis_client: AsyncMock
    ) -> None:
        """publish schedules the send in the background."""
        task = pubsub.publish("chat", "hello")
        assert task is not None
        assert await task == 0
        redis_client.publish.assert_awaited_once_with("chat", "hello")

    async def test_publish_failure_does_not_raise(
        self, pubsub: PubSubManager, redis_client: AsyncMock
    ) -> None:
        """Background publish failures are swallowed."""
        redis_client.publish.side_effect = RedisConnectionError("down")
        task = pubsub.publish("chat", "hello")
        assert task is not None
        assert await task == 0

    async def test_not_ready(self, connections: MagicMock) -> None:
        """An uninitialized manager drops publishes and refuses subscriptions."""
        manager = PubSubManager(connections, BackgroundExecutor())

        assert manager.publish("chat", "hello") is None
        assert await manager.publish_sync("chat", "hello") == 0
        with pytest.raises(SubscriptionError):
            await manager.subscribe("chat", lambda message: None)


class TestSubscribe:
    """Test single-channel subscriptions."""

    async def test_message_delivered_once(self, pubsub: PubSubManager) -> None:
        """A message published after subscribing reaches the handler exactly once."""
        received: list[str] = []
        delivered = asyncio.Event()

        def handler(message: str) -> None:
            received.append(message)
            delivered.set()

        await pubsub.subscribe("chat", handler)
        await pubsub.publish_sync("chat", "hello")

        await asyncio.wait_for(delivered.wait(), timeout=1.0)
        await asyncio.sleep(0.1)
        assert received == ["hello"]

    async def test_async_handler(self, pubsub: PubSubManager) -> None:
        """Coroutine handlers are awaited."""
        received: list[str] = []

        async def handler(message: str) -> None:
            received.append(message)

        await pubsub.subscribe("chat", handler)
        await pubsub.publish_sync("chat", "hello")

        await wait_until(lambda: received == ["hello"])

    async def test_lifecycle_callbacks(self, pubsub: PubSubManager) -> None:
        """on_subscribe and on_unsubscribe receive the channel name."""
        events: list[tuple[str, str]] = []

        subscription = await pubsub.subscribe(
            "chat",
            lambda message: None,
            on_subscribe=lambda channel: events.append(("subscribe", channel)),
            on_unsubscribe=lambda channel: events.append(("unsubscribe", channel)),
        )
        assert events == [("subscribe", "chat")]

        pubsub.unsubscribe("chat")
        await subscription.wait_closed(timeout=1.0)

        assert events == [("subscribe", "chat"), ("unsubscribe", "chat")]

    async def test_handler_errors_are_contained(self, pubsub: PubSubManager) -> None:
        """A raising handler does not stop later deliveries."""
        received: list[str] = []

        def handler(message: str) -> None:
            received.append(message)
            if message == "bad":
                raise ValueError("cannot handle")

        subscription = await pubsub.subscribe("chat", handler)
        await pubsub.publish_sync("chat", "bad")
        await pubsub.publish_sync("chat", "good")

        await wait_until(lambda: received == ["bad", "good"])
        assert subscription.is_active
        assert subscription.delivered == 1

    async def test_handle_exposes_state(self, pubsub: PubSubManager) -> None:
        """The returned handle wraps the channel and its listener task."""
        subscription = await pubsub.subscribe("chat", lambda message: None)

        assert subscription.channel == "chat"
        assert subscription.task is not None
        assert subscription.is_active
        assert not subscription.is_cancelled
        assert pubsub.get_subscription("chat") is subscription
        assert pubsub.active_subscriptions == 1

    async def test_resubscribe_replaces_previous(
        self, pubsub: PubSubManager
    ) -> None:
        """Subscribing to a registered channel detaches the old listener."""
        first = await pubsub.subscribe("chat", lambda message: None)
        second = await pubsub.subscribe("chat", lambda message: None)

        assert first.is_cancelled
        await first.wait_closed(timeout=1.0)
        assert pubsub.get_subscription("chat") is second
        assert pubsub.active_subscriptions == 1


class TestSubscribeMultiple:
    """Test multi-channel subscriptions."""

    async def test_channel_messages(self, pubsub: PubSubManager) -> None:
        """One listener serves all channels and reports which one fired."""
        received: list[ChannelMessage] = []

        subscription = await pubsub.subscribe_multiple(["lobby", "arena"], received.append)
        await pubsub.publish_sync("lobby", "a")
        await pubsub.publish_sync("arena", "b")

        await wait_until(lambda: len(received) == 2)
        assert [(m.channel, m.message) for m in received] == [("lobby", "a"), ("arena", "b")]
        assert pubsub.get_subscription("lobby") is subscription
        assert pubsub.get_subscription("arena") is subscription
        assert pubsub.active_subscriptions == 1

    async def test_unsubscribe_one_channel(
        self, pubsub: PubSubManager, broker: FakeBroker
    ) -> None:
        """Dropping one channel keeps the others flowing."""
        received: list[ChannelMessage] = []
        removed: list[str] = []

        subscription = await pubsub.subscribe_multiple(
            ["lobby", "arena"], received.append, on_unsubscribe=removed.append
        )
        assert isinstance(subscription, MultiChannelSubscription)

        assert pubsub.unsubscribe("arena") is True
        await wait_until(lambda: removed == ["arena"])

        assert await pubsub.publish_sync("arena", "ignored") == 0
        await pubsub.publish_sync("lobby", "kept")
        await wait_until(lambda: len(received) == 1)

        assert received[0].channel == "lobby"
        assert subscription.channels == ["lobby"]
        assert subscription.is_active

    async def test_last_channel_detaches(self, pubsub: PubSubManager) -> None:
        """Removing every channel stops the listener."""
        subscription = await pubsub.subscribe_multiple(["lobby", "arena"], lambda m: None)

        pubsub.unsubscribe("lobby")
        pubsub.unsubscribe("arena")
        await subscription.wait_closed(timeout=1.0)

        assert not subscription.is_active
        assert pubsub.active_subscriptions == 0

    async def test_requires_channels(self, pubsub: PubSubManager) -> None:
        """An empty channel list is rejected."""
        with pytest.raises(SubscriptionError):
            await pubsub.subscribe_multiple([], lambda m: None)


class TestSubscribePattern:
    """Test pattern subscriptions."""

    async def test_pattern_delivery(self, pubsub: PubSubManager) -> None:
        """Matching channels deliver pattern, channel and payload."""
        received: list[PatternMessage] = []

        await pubsub.subscribe_pattern("server.*", received.append)
        await pubsub.publish_sync("server.lobby", "up")
        await pubsub.publish_sync("proxy.main", "ignored")

        await wait_until(lambda: len(received) == 1)
        await asyncio.sleep(0.1)

        assert len(received) == 1
        message = received[0]
        assert (message.pattern, message.channel, message.message) == (
            "server.*",
            "server.lobby",
            "up",
        )

    async def test_unsubscribe_pattern(self, pubsub: PubSubManager) -> None:
        """Patterns are unsubscribed by the pattern string."""
        subscription = await pubsub.subscribe_pattern("server.*", lambda m: None)

        assert pubsub.unsubscribe("server.*") is True
        await subscription.wait_closed(timeout=1.0)

        assert await pubsub.publish_sync("server.lobby", "up") == 0


class TestUnsubscribe:
    """Test detaching listeners."""

    async def test_no_delivery_after_unsubscribe(self, pubsub: PubSubManager) -> None:
        """Once unsubscribed, publishes no longer reach the handler."""
        received: list[str] = []
        subscription = await pubsub.subscribe("chat", received.append)

        pubsub.unsubscribe("chat")
        assert subscription.is_cancelled
        await subscription.wait_closed(timeout=1.0)

        assert await pubsub.publish_sync("chat", "late") == 0
        await asyncio.sleep(0.1)
        assert received == []
        assert pubsub.get_subscription("chat") is None

    async def test_unsubscribe_unknown_channel(self, pubsub: PubSubManager) -> None:
        """Unknown channels report False."""
        assert pubsub.unsubscribe("nothing") is False

    async def test_unsubscribe_all(self, pubsub: PubSubManager) -> None:
        """Every listener is detached and the registry cleared."""
        first = await pubsub.subscribe("chat", lambda m: None)
        second = await pubsub.subscribe_pattern("server.*", lambda m: None)

        pubsub.unsubscribe_all()

        assert pubsub.channels == []
        await first.wait_closed(timeout=1.0)
        await second.wait_closed(timeout=1.0)
        assert pubsub.active_subscriptions == 0

    async def test_listener_failure_ends_subscription(
        self, pubsub: PubSubManager, broker: FakeBroker
    ) -> None:
        """A broken connection ends the listener with a SubscriptionError."""
        subscription = await pubsub.subscribe("chat", lambda m: None)
        broker.pubsubs[-1].fail_with = RedisConnectionError("connection reset")

        await subscription.wait_closed(timeout=1.0)

        assert isinstance(subscription.error, SubscriptionError)
        assert not subscription.is_active
        assert pubsub.get_subscription("chat") is None

    async def test_shutdown_stops_everything(
        self, pubsub: PubSubManager, broker: FakeBroker
    ) -> None:
        """Shutdown detaches listeners, closes their connections and stops accepting calls."""
        subscription = await pubsub.subscribe("chat", lambda m: None)

        await pubsub.shutdown()

        assert not pubsub.is_ready
        assert subscription.task is not None and subscription.task.done()
        assert broker.pubsubs[-1].closed
        assert pubsub.publish("chat", "late") is None
