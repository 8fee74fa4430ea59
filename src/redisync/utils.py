"""Helpers for common cross-node patterns on top of a Manager.

Every helper takes the Manager explicitly and degrades to a no-op (or the
caller's default) when it is missing or not ready, so optional Redis
support can be wired in without guarding each call site.

Key and channel layout:

    global:{key}                         data shared by every node
    server:{server_name}:{key}           data owned by one node
    user:{user_name}:{key}               per-user data, name lowercased
    broadcast:{channel}                  messages for every node
    server:{server_name}:{channel}       messages for one node
    user:{user_name}:notifications       messages for one user
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any, TypeVar

from redisync.cache import Cache
from redisync.errors import ConnectionError
from redisync.manager import Manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

ONE_MINUTE = 60
FIVE_MINUTES = 300
ONE_HOUR = 3600
ONE_DAY = 86400
ONE_WEEK = 604800

GLOBAL_PREFIX = "global:"
SERVER_PREFIX = "server:"
USER_PREFIX = "user:"
BROADCAST_PREFIX = "broadcast:"

SERVER_CACHE_PREFIX = "servers:"
USER_CACHE_PREFIX = "users:"


def to_seconds(amount: float, unit: str = "seconds") -> int:
    """Convert a duration to whole seconds for use as a TTL.

    ``unit`` is any ``timedelta`` keyword: seconds, minutes, hours, days, weeks.

    Example:
        to_seconds(90, "minutes")  # 5400
    """
    try:
        return int(timedelta(**{unit: amount}).total_seconds())
    except TypeError as e:
        raise ValueError(f"Unknown time unit: {unit}") from e


# -----------------------------------------------------------------------------
# Availability guards
# -----------------------------------------------------------------------------


def is_available(manager: Manager | None) -> bool:
    return manager is not None and manager.is_ready


def require_redis(manager: Manager | None) -> Manager:
    """Return the manager, or raise ConnectionError if it cannot be used."""
    if not is_available(manager):
        raise ConnectionError("Redis is not available for this operation")
    assert manager is not None
    return manager


async def if_redis_available(
    manager: Manager | None,
    action: Callable[[Manager], T | Awaitable[T]],
    default: T | None = None,
) -> T | None:
    """Run ``action(manager)`` only when Redis is usable.

    Failures inside ``action`` are logged and ``default`` is returned.
    """
    if not is_available(manager):
        return default
    assert manager is not None
    try:
        result = action(manager)
        if inspect.isawaitable(result):
            result = await result
        return result  # type: ignore[return-value]
    except Exception as e:
        logger.error(f"Redis action failed: {e}")
        return default


# -----------------------------------------------------------------------------
# Scoped data
# -----------------------------------------------------------------------------


class DataScope:
    """Object storage under a fixed key prefix.

    ``default_ttl`` applies when a save passes no TTL; zero or less stores
    without expiry.
    """

    def __init__(self, manager: Manager | None, prefix: str, default_ttl: int = 0) -> None:
        self.manager = manager
        self.prefix = prefix
        self.default_ttl = default_ttl

    def key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def save(self, key: str, data: Any, ttl_seconds: int | None = None) -> None:
        if not is_available(self.manager):
            return
        assert self.manager is not None
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        await self.manager.set_object(self.key(key), data, ttl if ttl > 0 else None)

    async def load(self, key: str, value_type: type[T]) -> T | None:
        if not is_available(self.manager):
            return None
        assert self.manager is not None
        return await self.manager.get_object(self.key(key), value_type)

    async def load_or_default(self, key: str, value_type: type[T], default: T) -> T:
        value = await self.load(key, value_type)
        return default if value is None else value

    async def delete(self, key: str) -> bool:
        if not is_available(self.manager):
            return False
        assert self.manager is not None
        return await self.manager.delete(self.key(key))

    async def has(self, key: str) -> bool:
        if not is_available(self.manager):
            return False
        assert self.manager is not None
        return await self.manager.exists(self.key(key))

    async def save_batch(self, items: Mapping[str, Any], ttl_seconds: int | None = None) -> None:
        """Save each item in turn; not atomic."""
        for key, data in items.items():
            await self.save(key, data, ttl_seconds)

    async def load_batch(self, keys: Iterable[str], value_type: type[T]) -> dict[str, T]:
        """Load each key in turn, leaving missing ones out."""
        found: dict[str, T] = {}
        if not is_available(self.manager):
            return found
        for key in keys:
            value = await self.load(key, value_type)
            if value is not None:
                found[key] = value
        return found


def global_data(manager: Manager | None) -> DataScope:
    """Data shared by every node; stored without expiry by default."""
    return DataScope(manager, GLOBAL_PREFIX)


def server_data(manager: Manager | None, server_name: str) -> DataScope:
    """Data owned by one node; stored without expiry by default."""
    return DataScope(manager, f"{SERVER_PREFIX}{server_name}:")


def user_data(manager: Manager | None, user_name: str) -> DataScope:
    """Per-user data, expiring after an hour unless told otherwise."""
    return DataScope(manager, f"{USER_PREFIX}{user_name.lower()}:", default_ttl=ONE_HOUR)


# -----------------------------------------------------------------------------
# Scoped caches
# -----------------------------------------------------------------------------


def server_cache(manager: Manager | None, name: str, value_type: type[T]) -> Cache[T] | None:
    if not is_available(manager):
        return None
    assert manager is not None
    return manager.get_cache(f"{SERVER_CACHE_PREFIX}{name}", value_type)


def user_cache(manager: Manager | None, name: str, value_type: type[T]) -> Cache[T] | None:
    if not is_available(manager):
        return None
    assert manager is not None
    return manager.get_cache(f"{USER_CACHE_PREFIX}{name}", value_type)


async def smart_cache(
    manager: Manager | None,
    key: str,
    value_type: type[T],
    provider: Callable[[], T | Awaitable[T] | None],
    ttl_seconds: int = FIVE_MINUTES,
) -> T | None:
    """Read ``key`` as an object, falling back to ``provider`` and storing its result.

    Without Redis the provider is simply called. Provider errors propagate;
    a None result is not stored.
    """

    async def provide() -> T | None:
        result = provider()
        if inspect.isawaitable(result):
            result = await result
        return result  # type: ignore[return-value]

    if not is_available(manager):
        return await provide()
    assert manager is not None

    cached = await manager.get_object_async(key, value_type)
    if cached is not None:
        return cached

    fresh = await provide()
    if fresh is not None:
        await manager.set_object(key, fresh, ttl_seconds)
    return fresh


# -----------------------------------------------------------------------------
# Cross-node messaging
# -----------------------------------------------------------------------------


def _publish(manager: Manager | None, channel: str, message: str) -> None:
    if not is_available(manager):
        logger.debug(f"Redis unavailable, not publishing to {channel}")
        return
    assert manager is not None
    if not manager.config.pubsub_enabled:
        logger.debug(f"Pub/sub disabled, not publishing to {channel}")
        return
    manager.publish(channel, message)


def broadcast(manager: Manager | None, channel: str, message: str) -> None:
    """Fire-and-forget a message to every node listening on ``channel``."""
    _publish(manager, f"{BROADCAST_PREFIX}{channel}", message)


def broadcast_object(manager: Manager | None, channel: str, value: Any) -> None:
    if not is_available(manager):
        return
    assert manager is not None
    _publish(manager, f"{BROADCAST_PREFIX}{channel}", manager.serializer.serialize(value))


def send_to_server(manager: Manager | None, server_name: str, channel: str, message: str) -> None:
    _publish(manager, f"{SERVER_PREFIX}{server_name}:{channel}", message)


def send_to_user(manager: Manager | None, user_name: str, message: str) -> None:
    _publish(manager, f"{USER_PREFIX}{user_name.lower()}:notifications", message)
