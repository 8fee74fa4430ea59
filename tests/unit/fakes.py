"""In-memory stand-ins for Redis used by unit tests.

Commands are served from a dict-backed store and a message broker, both
driven by a clock advanced by hand.
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeStore:
    """Key/value store with per-key expiry, mirroring Redis replies."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.data: dict[str, str] = {}
        self.expires_at: dict[str, int] = {}

    def _alive(self, key: str) -> bool:
        deadline = self.expires_at.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return key in self.data

    def get(self, key: str) -> str | None:
        return self.data[key] if self._alive(key) else None

    def set(self, key: str, value: str) -> bool:
        self.data[key] = value
        self.expires_at.pop(key, None)
        return True

    def setex(self, key: str, ttl: int, value: str) -> bool:
        self.data[key] = value
        self.expires_at[key] = self.clock() + ttl * 1000
        return True

    def exists(self, key: str) -> int:
        return int(self._alive(key))

    def delete(self, key: str) -> int:
        existed = self._alive(key)
        self.data.pop(key, None)
        self.expires_at.pop(key, None)
        return int(existed)

    def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        if ttl <= 0:
            self.delete(key)
        else:
            self.expires_at[key] = self.clock() + ttl * 1000
        return True

    def pttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        deadline = self.expires_at.get(key)
        if deadline is None:
            return -1
        return deadline - self.clock()

    def ttl(self, key: str) -> int:
        remaining = self.pttl(key)
        if remaining < 0:
            return remaining
        return (remaining + 500) // 1000


class FakePubSub:
    """Stand-in for redis-py's PubSub fed by a FakeBroker."""

    def __init__(self, broker: FakeBroker) -> None:
        self.broker = broker
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.channels: set[str] = set()
        self.patterns: set[str] = set()
        self.closed = False
        self.fail_with: Exception | None = None

    async def subscribe(self, *channels: str) -> None:
        for channel in channels:
            self.channels.add(channel)
            self.queue.put_nowait(
                {"type": "subscribe", "channel": channel, "pattern": None, "data": 1}
            )

    async def psubscribe(self, *patterns: str) -> None:
        for pattern in patterns:
            self.patterns.add(pattern)
            self.queue.put_nowait(
                {"type": "psubscribe", "channel": pattern, "pattern": None, "data": 1}
            )

    async def unsubscribe(self, *channels: str) -> None:
        self.channels.difference_update(channels)

    async def punsubscribe(self, *patterns: str) -> None:
        self.patterns.difference_update(patterns)

    async def get_message(
        self, ignore_subscribe_messages: bool = False, timeout: float | None = None
    ) -> dict[str, Any] | None:
        if self.fail_with is not None:
            raise self.fail_with
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self) -> None:
        self.closed = True
        self.channels.clear()
        self.patterns.clear()


class FakeBroker:
    """Routes PUBLISH to every FakePubSub listening on a matching channel."""

    def __init__(self) -> None:
        self.pubsubs: list[FakePubSub] = []

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    def publish(self, channel: str, message: str) -> int:
        receivers = 0
        for pubsub in self.pubsubs:
            if pubsub.closed:
                continue
            if channel in pubsub.channels:
                pubsub.queue.put_nowait(
                    {"type": "message", "channel": channel, "pattern": None, "data": message}
                )
                receivers += 1
            for pattern in pubsub.patterns:
                if fnmatch.fnmatchcase(channel, pattern):
                    pubsub.queue.put_nowait(
                        {
                            "type": "pmessage",
                            "channel": channel,
                            "pattern": pattern,
                            "data": message,
                        }
                    )
                    receivers += 1
        return receivers


def make_client(store: FakeStore, broker: FakeBroker) -> AsyncMock:
    """AsyncMock Redis client whose commands hit the fake store and broker."""
    client = AsyncMock()
    client.get.side_effect = store.get
    client.set.side_effect = store.set
    client.setex.side_effect = store.setex
    client.exists.side_effect = store.exists
    client.delete.side_effect = store.delete
    client.expire.side_effect = store.expire
    client.ttl.side_effect = store.ttl
    client.pttl.side_effect = store.pttl
    client.ping.return_value = True
    client.publish.side_effect = broker.publish
    client.pubsub = MagicMock(side_effect=broker.pubsub)
    return client


def make_connections(client: AsyncMock) -> MagicMock:
    """ConnectionManager double that lends out ``client``."""
    connections = MagicMock()
    connections.is_initialized = True
    connections.initialize = AsyncMock()
    connections.shutdown = AsyncMock()
    connections.validate_connections = AsyncMock(return_value=True)
    connections.health_check = AsyncMock(return_value={"initialized": True, "healthy": True})
    connections.client = MagicMock(return_value=client)

    @asynccontextmanager
    async def connection() -> AsyncIterator[AsyncMock]:
        yield client

    connections.connection = connection
    return connections


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)
