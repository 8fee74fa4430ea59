"""Typed two-tier cache.

A Cache keeps a local dict in front of the remote store. Reads fall through
to Redis on a local miss and repopulate the local tier with an expiration
derived from the remote TTL read right after the value, so a local entry
never outlives the key it shadows. Writes go to Redis first and only then
update the local tier.

There is no cross-node invalidation: another process writing the same key
wins on the remote side, and this process converges once its local entry
expires.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from redis.asyncio import Redis

from redisync.observability.logging import LogContext
from redisync.serialization import Serializer

if TYPE_CHECKING:
    from redisync.manager import Manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_EXPIRY = -1
MISSING_TTL = -2


def _now_ms() -> int:
    return int(time.time() * 1000)


class CacheState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class CacheEntry(Generic[T]):
    """Local copy of a remote value.

    ``expires_at_ms`` is an epoch timestamp, or -1 when the remote key has no
    expiry.
    """

    value: T
    expires_at_ms: int = NO_EXPIRY

    def is_expired(self, now_ms: int | None = None) -> bool:
        if self.expires_at_ms == NO_EXPIRY:
            return False
        return (now_ms if now_ms is not None else _now_ms()) > self.expires_at_ms


@dataclass(frozen=True)
class LocalCacheStats:
    total: int
    valid: int
    expired: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "valid": self.valid, "expired": self.expired}


def _expires_at(now_ms: int, ttl_seconds: int) -> int:
    return now_ms + ttl_seconds * 1000 if ttl_seconds > 0 else NO_EXPIRY


class Cache(Generic[T]):
    """Named, typed cache backed by a local dict and Redis.

    Obtain instances through Manager.get_cache(); one instance exists per
    name. Once closed, every operation is a no-op returning None, False,
    -2 or an empty result.
    """

    def __init__(
        self,
        manager: Manager,
        name: str,
        value_type: type[T],
        serializer: Serializer,
    ) -> None:
        self.manager = manager
        self.name = name
        self.value_type = value_type
        self.serializer = serializer
        self.default_ttl = manager.config.default_ttl_seconds
        self._local: dict[str, CacheEntry[T]] = {}
        self._state = CacheState.OPEN

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CacheState.CLOSED

    @property
    def local_size(self) -> int:
        return len(self._local)

    def set_serializer(self, serializer: Serializer) -> None:
        self.serializer = serializer

    def remote_key(self, key: str) -> str:
        return self.manager.keys.cache_key(self.name, key)

    async def _execute(self, operation: Callable[[Redis], Awaitable[Any]], name: str) -> Any:
        with LogContext(cache_name=self.name):
            return await self.manager.execute(operation, name=f"cache.{name}")

    def _fresh(self, key: str) -> CacheEntry[T] | None:
        entry = self._local.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            self._local.pop(key, None)
            return None
        return entry

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> T | None:
        """Return the value for ``key``, or None if it is not cached anywhere."""
        if self.is_closed:
            return None

        entry = self._fresh(key)
        if entry is not None:
            return entry.value

        remote_key = self.remote_key(key)

        async def fetch(client: Redis) -> tuple[str | None, int]:
            raw = await client.get(remote_key)
            if raw is None:
                return None, MISSING_TTL
            return raw, int(await client.pttl(remote_key))

        # Taken before the TTL read so the local expiry cannot overshoot it
        now = _now_ms()
        raw, pttl = await self._execute(fetch, "get")
        if raw is None:
            self._local.pop(key, None)
            return None

        value = self.serializer.deserialize(raw, self.value_type)
        if pttl in (MISSING_TTL, 0) or self.is_closed:
            # Expiring or expired since the GET; hand it out but do not keep it
            return value

        expires_at = now + pttl if pttl > 0 else NO_EXPIRY
        self._local[key] = CacheEntry(value, expires_at)
        return value

    async def exists(self, key: str) -> bool:
        if self.is_closed:
            return False
        if self._fresh(key) is not None:
            return True
        remote_key = self.remote_key(key)
        return bool(await self._execute(lambda c: c.exists(remote_key), "exists"))

    async def get_ttl(self, key: str) -> int:
        """Remaining remote TTL in seconds; -1 for no expiry, -2 if missing."""
        if self.is_closed:
            return MISSING_TTL
        remote_key = self.remote_key(key)
        return int(await self._execute(lambda c: c.ttl(remote_key), "ttl"))

    async def get_multiple(self, keys: Iterable[str]) -> dict[str, T]:
        """Look up each key in turn; missing keys are left out of the result.

        Not atomic: values may come from different points in time.
        """
        found: dict[str, T] = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                found[key] = value
        return found

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def put(self, key: str, value: T, ttl_seconds: int | None = None) -> None:
        """Store ``value`` remotely, then locally.

        ``ttl_seconds`` defaults to the configured TTL; zero or less stores
        the key without expiry. If the remote write fails the error
        propagates and the local tier is left untouched.
        """
        if self.is_closed:
            return

        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        payload = self.serializer.serialize(value)
        remote_key = self.remote_key(key)

        now = _now_ms()
        if ttl > 0:
            await self._execute(lambda c: c.setex(remote_key, ttl, payload), "put")
        else:
            await self._execute(lambda c: c.set(remote_key, payload), "put")

        if not self.is_closed:
            self._local[key] = CacheEntry(value, _expires_at(now, ttl))

    async def put_multiple(self, values: Mapping[str, T], ttl_seconds: int | None = None) -> None:
        """Store each item in turn. Not atomic: a failure leaves earlier items written."""
        for key, value in values.items():
            await self.put(key, value, ttl_seconds)

    async def remove(self, key: str) -> bool:
        """Delete the remote key and drop any local copy.

        Returns:
            True if the remote key existed.
        """
        if self.is_closed:
            return False
        remote_key = self.remote_key(key)
        try:
            deleted = await self._execute(lambda c: c.delete(remote_key), "remove")
        finally:
            self._local.pop(key, None)
        return bool(deleted)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a new remote TTL and realign the local copy with it."""
        if self.is_closed:
            return False
        remote_key = self.remote_key(key)
        now = _now_ms()
        updated = bool(await self._execute(lambda c: c.expire(remote_key, ttl_seconds), "expire"))

        entry = self._local.get(key)
        if entry is not None:
            if updated and ttl_seconds > 0:
                entry.expires_at_ms = _expires_at(now, ttl_seconds)
            else:
                # Key is gone remotely (missing, or a non-positive TTL deleted it)
                self._local.pop(key, None)
        return updated

    async def get_or_compute(
        self,
        key: str,
        supplier: Callable[[], T | Awaitable[T] | None],
        ttl_seconds: int | None = None,
    ) -> T | None:
        """Return the cached value, computing and storing it on a miss.

        ``supplier`` may be a plain or async callable. If it raises, the error
        is logged and None is returned. A None result is not cached.
        """
        if self.is_closed:
            return None

        cached = await self.get(key)
        if cached is not None:
            return cached

        try:
            result = supplier()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Supplier for {self.name}:{key} failed: {e}", exc_info=True)
            return None

        if result is not None:
            await self.put(key, result, ttl_seconds)  # type: ignore[arg-type]
        return result  # type: ignore[return-value]

    # -------------------------------------------------------------------------
    # Background variants
    # -------------------------------------------------------------------------

    def get_async(self, key: str) -> asyncio.Task[T | None]:
        return self.manager.submit(lambda: self.get(key), name=f"cache.{self.name}.get")

    def put_async(
        self, key: str, value: T, ttl_seconds: int | None = None
    ) -> asyncio.Task[None]:
        return self.manager.submit(
            lambda: self.put(key, value, ttl_seconds), name=f"cache.{self.name}.put"
        )

    def get_or_compute_async(
        self,
        key: str,
        supplier: Callable[[], T | Awaitable[T] | None],
        ttl_seconds: int | None = None,
    ) -> asyncio.Task[T | None]:
        return self.manager.submit(
            lambda: self.get_or_compute(key, supplier, ttl_seconds),
            name=f"cache.{self.name}.get_or_compute",
        )

    # -------------------------------------------------------------------------
    # Local tier maintenance
    # -------------------------------------------------------------------------

    def cleanup(self) -> int:
        """Drop expired local entries. Never raises.

        Returns:
            Number of entries removed.
        """
        try:
            now = _now_ms()
            expired = [key for key, entry in list(self._local.items()) if entry.is_expired(now)]
            for key in expired:
                self._local.pop(key, None)
        except Exception as e:
            logger.error(f"Local cleanup of cache {self.name} failed: {e}")
            return 0
        if expired:
            logger.debug(f"Removed {len(expired)} expired local entries from {self.name}")
        return len(expired)

    def clear_local(self) -> None:
        self._local.clear()

    def local_stats(self) -> LocalCacheStats:
        now = _now_ms()
        expired = sum(1 for entry in self._local.values() if entry.is_expired(now))
        total = len(self._local)
        return LocalCacheStats(total=total, valid=total - expired, expired=expired)

    def close(self) -> None:
        """Close the cache and drop the local tier. Idempotent."""
        if self.is_closed:
            return
        self._state = CacheState.CLOSED
        self._local.clear()
        logger.info(f"Cache {self.name} closed")
