"""Publish and subscribe on top of the shared connection pool."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from redis.exceptions import RedisError

from redisync.connection import ConnectionManager
from redisync.errors import RedisyncError, SubscriptionError
from redisync.executor import BackgroundExecutor
from redisync.pubsub.subscriptions import (
    DEFAULT_POLL_TIMEOUT,
    ChannelSubscription,
    LifecycleCallback,
    MessageHandler,
    MultiChannelSubscription,
    PatternSubscription,
    Subscription,
)

logger = logging.getLogger(__name__)


class PubSubManager:
    """Channel, multi-channel and pattern messaging.

    Subscriptions are registered by channel (or pattern) name so they can be
    found again by unsubscribe(). A multi-channel subscription is registered
    under each of its channels.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        executor: BackgroundExecutor,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        self.connections = connections
        self.executor = executor
        self.poll_timeout = poll_timeout
        self._registry: dict[str, Subscription] = {}
        self._subscriptions: set[Subscription] = set()
        self._publishes: set[asyncio.Task[int]] = set()
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def active_subscriptions(self) -> int:
        """Number of listeners still running and not detached."""
        return sum(1 for sub in self._subscriptions if sub.is_active)

    @property
    def channels(self) -> list[str]:
        """Registered channel and pattern names."""
        return list(self._registry)

    def get_subscription(self, name: str) -> Subscription | None:
        return self._registry.get(name)

    async def initialize(self) -> None:
        """Mark the manager ready. Idempotent."""
        if self._ready:
            return
        self._ready = True
        logger.info("Pub/sub manager initialized")

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, channel: str, message: str) -> asyncio.Task[int] | None:
        """Publish in the background; failures are logged, never raised.

        Returns the background task, or None if the manager is not ready.
        """
        if not self._ready:
            logger.warning(f"Pub/sub not ready, dropping message for {channel}")
            return None
        task = self.executor.submit(
            lambda: self.publish_sync(channel, message), name=f"redisync-publish-{channel}"
        )
        self._publishes.add(task)
        task.add_done_callback(self._publishes.discard)
        return task

    async def publish_sync(self, channel: str, message: str) -> int:
        """Publish and return the number of receivers, or 0 on failure."""
        if not self._ready:
            logger.warning(f"Pub/sub not ready, cannot publish to {channel}")
            return 0
        try:
            async with self.connections.connection() as client:
                receivers = int(await client.publish(channel, message))
        except (RedisyncError, RedisError, OSError) as e:
            logger.error(f"Failed to publish to {channel}: {e}")
            return 0
        logger.debug(f"Published to {channel} ({receivers} receivers)")
        return receivers

    # -------------------------------------------------------------------------
    # Subscribing
    # -------------------------------------------------------------------------

    def _require_ready(self, name: str) -> None:
        if not self._ready:
            raise SubscriptionError("Pub/sub manager is not initialized", channel=name)

    async def subscribe(
        self,
        channel: str,
        handler: MessageHandler,
        on_subscribe: LifecycleCallback | None = None,
        on_unsubscribe: LifecycleCallback | None = None,
    ) -> ChannelSubscription:
        """Listen on one channel; ``handler`` receives each message string."""
        self._require_ready(channel)
        subscription = ChannelSubscription(
            self.connections.client(),
            channel,
            handler,
            on_subscribe=on_subscribe,
            on_unsubscribe=on_unsubscribe,
            poll_timeout=self.poll_timeout,
        )
        await self._start(subscription)
        return subscription

    async def subscribe_multiple(
        self,
        channels: Iterable[str],
        handler: MessageHandler,
        on_subscribe: LifecycleCallback | None = None,
        on_unsubscribe: LifecycleCallback | None = None,
    ) -> MultiChannelSubscription:
        """Listen on several channels with one listener.

        ``handler`` receives a ChannelMessage so it can tell channels apart.
        """
        channels = list(channels)
        self._require_ready(channels[0] if channels else "")
        subscription = MultiChannelSubscription(
            self.connections.client(),
            channels,
            handler,
            on_subscribe=on_subscribe,
            on_unsubscribe=on_unsubscribe,
            poll_timeout=self.poll_timeout,
        )
        await self._start(subscription)
        return subscription

    async def subscribe_pattern(
        self,
        pattern: str,
        handler: MessageHandler,
        on_subscribe: LifecycleCallback | None = None,
        on_unsubscribe: LifecycleCallback | None = None,
    ) -> PatternSubscription:
        """Listen on every channel matching a glob ``pattern``.

        ``handler`` receives a PatternMessage.
        """
        self._require_ready(pattern)
        subscription = PatternSubscription(
            self.connections.client(),
            pattern,
            handler,
            on_subscribe=on_subscribe,
            on_unsubscribe=on_unsubscribe,
            poll_timeout=self.poll_timeout,
        )
        await self._start(subscription)
        return subscription

    async def _start(self, subscription: Subscription) -> None:
        await subscription.start()
        for name in subscription.names:
            if name in self._registry:
                logger.warning(f"Replacing existing subscription on {name}")
                self._release(name)
            self._registry[name] = subscription
        self._subscriptions.add(subscription)
        subscription.add_finished_callback(self._forget)

    def _forget(self, subscription: Subscription) -> None:
        """Drop registry entries of a listener that has exited."""
        self._subscriptions.discard(subscription)
        for name in [n for n, sub in self._registry.items() if sub is subscription]:
            del self._registry[name]

    def _release(self, name: str) -> Subscription | None:
        subscription = self._registry.pop(name, None)
        if subscription is None:
            return None
        if isinstance(subscription, MultiChannelSubscription):
            subscription.cancel_channel(name)
        else:
            subscription.cancel()
        return subscription

    # -------------------------------------------------------------------------
    # Unsubscribing
    # -------------------------------------------------------------------------

    def unsubscribe(self, channel: str) -> bool:
        """Detach whatever is listening on ``channel`` (or pattern).

        Detaching is cooperative; the listener stops at its next checkpoint.

        Returns:
            True if a subscription was registered under that name.
        """
        subscription = self._release(channel)
        if subscription is None:
            logger.debug(f"No subscription registered for {channel}")
            return False
        logger.info(f"Unsubscribe requested for {channel}")
        return True

    def unsubscribe_all(self) -> None:
        """Detach every registered listener and clear the registry."""
        for subscription in set(self._registry.values()):
            subscription.cancel()
        count = len(self._registry)
        self._registry.clear()
        if count:
            logger.info(f"Unsubscribe requested for {count} channels")

    async def shutdown(self) -> None:
        """Detach all listeners, wait for them and for pending publishes."""
        if not self._ready and not self._subscriptions:
            return
        self._ready = False
        self.unsubscribe_all()

        # Listeners notice detach within one poll interval
        grace = self.poll_timeout * 2 + 1
        await asyncio.gather(
            *(sub.wait_closed(timeout=grace) for sub in list(self._subscriptions))
        )
        self._subscriptions.clear()

        if self._publishes:
            await asyncio.gather(*self._publishes, return_exceptions=True)

        logger.info("Pub/sub manager shut down")
