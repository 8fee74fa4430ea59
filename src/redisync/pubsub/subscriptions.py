"""Subscription handles and their listener loops.

Each subscription owns one redis-py PubSub (and therefore one pooled
connection) plus one asyncio task reading from it. Detaching is cooperative:
cancel() only sets a flag, and the loop notices it between deliveries or at
the next poll timeout.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from redisync.errors import SubscriptionError
from redisync.observability.logging import LogContext
from redisync.pubsub.messages import ChannelMessage, PatternMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], "Awaitable[None] | None"]
LifecycleCallback = Callable[[str], "Awaitable[None] | None"]

# How long get_message blocks before the loop re-checks its detach flag
DEFAULT_POLL_TIMEOUT = 1.0
# How long start() waits for the server to confirm the subscription
CONFIRM_TIMEOUT = 5.0


async def _call(func: Callable[..., Any], *args: Any) -> None:
    result = func(*args)
    if inspect.isawaitable(result):
        await result


class Subscription(ABC):
    """Base class for a listener bound to one or more channels or patterns."""

    kind = "channel"
    subscribe_type = "subscribe"
    message_type = "message"

    def __init__(
        self,
        redis: Redis,
        names: Iterable[str],
        handler: MessageHandler,
        on_subscribe: LifecycleCallback | None = None,
        on_unsubscribe: LifecycleCallback | None = None,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        self._redis = redis
        self._names: list[str] = list(dict.fromkeys(names))
        if not self._names:
            raise SubscriptionError(f"A {self.kind} subscription needs at least one name")
        self.handler = handler
        self.on_subscribe = on_subscribe
        self.on_unsubscribe = on_unsubscribe
        self.poll_timeout = poll_timeout

        self._pubsub: PubSub | None = None
        self._task: asyncio.Task[None] | None = None
        self._detached = False
        self._pending_removals: list[str] = []
        self._backlog: list[dict[str, Any]] = []
        self.error: SubscriptionError | None = None
        self.delivered = 0
        self._finished_callbacks: list[Callable[[Subscription], None]] = []

    @property
    def names(self) -> list[str]:
        """Channels or patterns this subscription still listens on."""
        return list(self._names)

    @property
    def _label(self) -> str:
        return ", ".join(self._names) or "<none>"

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._detached

    @property
    def is_cancelled(self) -> bool:
        return self._detached

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def add_finished_callback(self, callback: Callable[[Subscription], None]) -> None:
        """Run ``callback(self)`` once the listener loop has exited."""
        self._finished_callbacks.append(callback)

    async def start(self) -> None:
        """Subscribe and launch the listener task.

        Returns once the server has confirmed every channel or pattern, so a
        message published afterwards is guaranteed to be seen.
        """
        if self._task is not None:
            return

        self._pubsub = self._redis.pubsub()
        try:
            await self._send_subscribe(self._pubsub, self._names)
            await asyncio.wait_for(self._await_confirmations(), timeout=CONFIRM_TIMEOUT)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            await self._close_pubsub()
            raise SubscriptionError(
                f"Failed to subscribe to {', '.join(self._names)}: {e}",
                channel=self._names[0],
            ) from e

        self._task = asyncio.create_task(
            self._listen_loop(), name=f"redisync-{self.kind}-{self._names[0]}"
        )
        logger.info(f"Subscribed to {self.kind} {', '.join(self._names)}")

    async def _await_confirmations(self) -> None:
        assert self._pubsub is not None
        pending = set(self._names)
        while pending:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=False, timeout=self.poll_timeout
            )
            if message is None:
                continue
            if message["type"] == self.subscribe_type:
                name = message["channel"]
                pending.discard(name)
                await self._invoke_callback(self.on_subscribe, name)
            else:
                # Messages on already-confirmed channels can arrive first
                self._backlog.append(message)

    def cancel(self) -> None:
        """Request the listener to detach at its next checkpoint."""
        if not self._detached:
            self._detached = True
            logger.debug(f"Detach requested for {self.kind} {', '.join(self._names)}")

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the listener task to exit; force-cancel it after ``timeout``."""
        task = self._task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning(f"Listener for {', '.join(self._names)} did not stop, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _listen_loop(self) -> None:
        """Main loop for receiving messages."""
        assert self._pubsub is not None
        try:
            while not self._detached:
                await self._apply_removals()
                if self._detached:
                    break

                if self._backlog:
                    message: dict[str, Any] | None = self._backlog.pop(0)
                else:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=False,
                        timeout=self.poll_timeout,
                    )

                if message is None or self._detached:
                    continue

                if message["type"] == self.message_type:
                    await self._deliver(message)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.error = SubscriptionError(
                f"Listener for {self._label} failed: {e}",
                channel=self._names[0] if self._names else None,
            )
            logger.error(str(self.error))
        finally:
            self._detached = True
            await self._teardown()
            for callback in self._finished_callbacks:
                callback(self)

    async def _apply_removals(self) -> None:
        if not self._pending_removals or self._pubsub is None:
            return
        removed, self._pending_removals = self._pending_removals, []
        await self._send_unsubscribe(self._pubsub, removed)
        for name in removed:
            await self._invoke_callback(self.on_unsubscribe, name)
        if not self._names:
            self._detached = True

    async def _deliver(self, message: dict[str, Any]) -> None:
        """Hand one message to the handler; handler failures are logged only."""
        channel = message["channel"]
        if not self._accepts(message):
            return
        with LogContext(channel=channel):
            try:
                await _call(self.handler, self._build_payload(message))
                self.delivered += 1
            except Exception as e:
                logger.error(f"Handler for {self.kind} {channel} raised: {e}", exc_info=True)

    async def _invoke_callback(self, callback: LifecycleCallback | None, name: str) -> None:
        if callback is None:
            return
        with LogContext(channel=name):
            try:
                await _call(callback, name)
            except Exception as e:
                logger.error(f"Subscription callback for {name} raised: {e}")

    async def _teardown(self) -> None:
        if self._pubsub is None:
            return
        names = list(self._names) + self._pending_removals
        self._pending_removals = []
        try:
            await self._send_unsubscribe(self._pubsub, names)
        except (RedisError, OSError) as e:
            logger.warning(f"Error unsubscribing from {', '.join(names)}: {e}")
        for name in names:
            await self._invoke_callback(self.on_unsubscribe, name)
        await self._close_pubsub()
        logger.info(f"Unsubscribed from {self.kind} {', '.join(names)}")

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing pub/sub connection: {e}")

    def _accepts(self, message: dict[str, Any]) -> bool:
        return message["channel"] in self._names

    async def _send_subscribe(self, pubsub: PubSub, names: list[str]) -> None:
        await pubsub.subscribe(*names)

    async def _send_unsubscribe(self, pubsub: PubSub, names: list[str]) -> None:
        if names:
            await pubsub.unsubscribe(*names)

    @abstractmethod
    def _build_payload(self, message: dict[str, Any]) -> Any:
        """Convert a raw redis-py message into what the handler receives."""


class ChannelSubscription(Subscription):
    """Single channel; the handler receives the message text."""

    def __init__(
        self,
        redis: Redis,
        channel: str,
        handler: MessageHandler,
        on_subscribe: LifecycleCallback | None = None,
        on_unsubscribe: LifecycleCallback | None = None,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        super().__init__(redis, [channel], handler, on_subscribe, on_unsubscribe, poll_timeout)

    @property
    def channel(self) -> str:
        return self._names[0]

    def _build_payload(self, message: dict[str, Any]) -> str:
        return str(message["data"])


class MultiChannelSubscription(Subscription):
    """Several channels served by one listener; the handler receives ChannelMessage."""

    kind = "channels"

    @property
    def channels(self) -> list[str]:
        return self.names

    def cancel_channel(self, channel: str) -> bool:
        """Stop listening on one channel; detaches entirely once none remain.

        Returns:
            True if the channel was part of this subscription.
        """
        if channel not in self._names:
            return False
        self._names.remove(channel)
        self._pending_removals.append(channel)
        logger.debug(f"Channel {channel} removed from multi-channel subscription")
        return True

    def _build_payload(self, message: dict[str, Any]) -> ChannelMessage:
        return ChannelMessage(channel=message["channel"], message=str(message["data"]))


class PatternSubscription(Subscription):
    """Glob pattern; the handler receives PatternMessage."""

    kind = "pattern"
    subscribe_type = "psubscribe"
    message_type = "pmessage"

    def __init__(
        self,
        redis: Redis,
        pattern: str,
        handler: MessageHandler,
        on_subscribe: LifecycleCallback | None = None,
        on_unsubscribe: LifecycleCallback | None = None,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        super().__init__(redis, [pattern], handler, on_subscribe, on_unsubscribe, poll_timeout)

    @property
    def pattern(self) -> str:
        return self._names[0]

    def _accepts(self, message: dict[str, Any]) -> bool:
        return message["pattern"] in self._names

    async def _send_subscribe(self, pubsub: PubSub, names: list[str]) -> None:
        await pubsub.psubscribe(*names)

    async def _send_unsubscribe(self, pubsub: PubSub, names: list[str]) -> None:
        if names:
            await pubsub.punsubscribe(*names)

    def _build_payload(self, message: dict[str, Any]) -> PatternMessage:
        return PatternMessage(
            pattern=message["pattern"],
            channel=message["channel"],
            message=str(message["data"]),
        )
