"""Facade over the connection pool, caches and pub/sub.

A Manager is an explicit handle: construct it once at startup, initialize
it, and pass it to whatever needs Redis. It moves through
UNINITIALIZED -> READY -> CLOSED; a closed manager may be initialized again.

Example:
    async with Manager(StoreConfig(host="localhost")) as manager:
        await manager.set("foo", "bar")
        sessions = manager.get_cache("sessions", SessionData)
        await sessions.put("u1", session, ttl_seconds=60)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from types import TracebackType
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from redisync.cache import Cache
from redisync.config import StoreConfig
from redisync.connection import ConnectionManager
from redisync.errors import ConfigurationError, ConnectionError, OperationError
from redisync.executor import BackgroundExecutor
from redisync.keys import CacheKeys
from redisync.observability.logging import LogContext
from redisync.pubsub.manager import PubSubManager
from redisync.serialization import JsonSerializer, Serializer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on waiting for background work during shutdown
EXECUTOR_DRAIN_TIMEOUT = 10.0


class ManagerState(str, Enum):
    """Manager lifecycle."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


class Manager:
    """Entry point for cache and messaging operations.

    Features:
    - Pooled execution of arbitrary Redis operations
    - String and object primitives with background variants
    - Memoized named caches
    - Publish helpers and access to the PubSubManager
    - Periodic maintenance (local cleanup and pool validation)
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        serializer: Serializer | None = None,
        **pool_options: Any,
    ) -> None:
        self.config = config or StoreConfig.from_settings()
        self.serializer: Serializer = serializer or JsonSerializer()
        self.keys = CacheKeys(self.config.key_prefix, self.config.channel_prefix)
        self._pool_options = pool_options
        self._state = ManagerState.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._connections: ConnectionManager | None = None
        self._executor: BackgroundExecutor | None = None
        self._pubsub: PubSubManager | None = None
        self._caches: dict[str, Cache[Any]] = {}
        self._maintenance_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ManagerState.READY

    @property
    def connections(self) -> ConnectionManager:
        if self._connections is None:
            raise ConnectionError("Manager is not initialized")
        return self._connections

    @property
    def pubsub(self) -> PubSubManager:
        """The PubSubManager; raises ConfigurationError if pub/sub is disabled."""
        if self._pubsub is None:
            if not self.config.pubsub_enabled:
                raise ConfigurationError("Pub/sub is disabled", field="pubsub_enabled")
            raise ConnectionError("Manager is not initialized")
        return self._pubsub

    async def initialize(self, config: StoreConfig | None = None) -> None:
        """Connect and start background maintenance.

        Raises:
            ConfigurationError: If already initialized or the config is invalid.
            ConnectionError: If Redis cannot be reached.
        """
        async with self._lock:
            if self._state is ManagerState.READY:
                logger.error("Manager is already initialized; refusing to initialize again")
                raise ConfigurationError("Manager is already initialized")

            if config is not None:
                self.config = config
                self.keys = CacheKeys(config.key_prefix, config.channel_prefix)
            self.config.validate()

            connections = ConnectionManager(self.config, **self._pool_options)
            await connections.initialize()

            executor = BackgroundExecutor(self.config.executor_max_concurrency)
            pubsub: PubSubManager | None = None
            if self.config.pubsub_enabled:
                pubsub = PubSubManager(connections, executor)
                await pubsub.initialize()

            self._connections = connections
            self._executor = executor
            self._pubsub = pubsub
            self._caches = {}
            self._state = ManagerState.READY
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="redisync-maintenance"
            )
            logger.info(f"Redis manager initialized ({self.config.redis_url})")

    async def shutdown(self) -> None:
        """Close caches, pub/sub and the pool. Idempotent."""
        async with self._lock:
            if self._state is not ManagerState.READY:
                return
            self._state = ManagerState.CLOSED
            logger.info("Shutting down Redis manager")

            task, self._maintenance_task = self._maintenance_task, None
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            for cache in self._caches.values():
                cache.close()
            self._caches.clear()

            if self._pubsub is not None:
                await self._pubsub.shutdown()
                self._pubsub = None

            if self._executor is not None:
                await self._executor.shutdown(timeout=EXECUTOR_DRAIN_TIMEOUT)
                self._executor = None

            if self._connections is not None:
                await self._connections.shutdown()
                self._connections = None

            logger.info("Redis manager shut down")

    async def __aenter__(self) -> Manager:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self, operation: Callable[[Redis], Awaitable[T]], name: str | None = None
    ) -> T:
        """Run ``operation`` against a borrowed connection and return its result.

        Failures are logged and re-raised; Redis command errors surface as
        OperationError.
        """
        if self._state is not ManagerState.READY or self._connections is None:
            raise ConnectionError("Manager is not initialized")

        label = name or getattr(operation, "__name__", "execute")
        with LogContext(operation=label):
            try:
                async with self._connections.connection() as client:
                    return await operation(client)
            except (RedisError, OSError) as e:
                logger.error(f"Redis operation {label} failed: {e}")
                raise OperationError(f"Redis operation {label} failed: {e}", operation=label) from e
            except Exception as e:
                logger.error(f"Redis operation {label} failed: {e}")
                raise

    def submit(
        self, factory: Callable[[], Awaitable[T]], name: str | None = None
    ) -> asyncio.Task[T]:
        """Run ``factory()`` on the background executor."""
        if self._executor is None:
            raise ConnectionError("Manager is not initialized")
        return self._executor.submit(factory, name=name)

    def execute_async(
        self, operation: Callable[[Redis], Awaitable[T]], name: str | None = None
    ) -> asyncio.Task[T]:
        """Background variant of execute(); the task re-raises its failure."""
        return self.submit(lambda: self.execute(operation, name), name=name)

    # -------------------------------------------------------------------------
    # String primitives
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """SET, or SETEX when ``ttl_seconds`` is positive."""
        if ttl_seconds is not None and ttl_seconds > 0:
            return bool(await self.execute(lambda c: c.setex(key, ttl_seconds, value), "setex"))
        return bool(await self.execute(lambda c: c.set(key, value), "set"))

    async def get(self, key: str) -> str | None:
        return await self.execute(lambda c: c.get(key), "get")

    async def exists(self, key: str) -> bool:
        return bool(await self.execute(lambda c: c.exists(key), "exists"))

    async def delete(self, key: str) -> bool:
        return bool(await self.execute(lambda c: c.delete(key), "delete"))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.execute(lambda c: c.expire(key, ttl_seconds), "expire"))

    async def get_ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 for no expiry, -2 for a missing key."""
        return int(await self.execute(lambda c: c.ttl(key), "ttl"))

    # -------------------------------------------------------------------------
    # Object primitives
    # -------------------------------------------------------------------------

    async def set_object(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        return await self.set(key, self.serializer.serialize(value), ttl_seconds)

    async def get_object(self, key: str, value_type: type[T]) -> T | None:
        raw = await self.get(key)
        if raw is None:
            return None
        return self.serializer.deserialize(raw, value_type)

    # -------------------------------------------------------------------------
    # Background variants
    # -------------------------------------------------------------------------

    def set_async(self, key: str, value: str, ttl_seconds: int | None = None) -> asyncio.Task[bool]:
        return self.submit(lambda: self.set(key, value, ttl_seconds), name="set")

    def get_async(self, key: str) -> asyncio.Task[str | None]:
        return self.submit(lambda: self.get(key), name="get")

    def exists_async(self, key: str) -> asyncio.Task[bool]:
        return self.submit(lambda: self.exists(key), name="exists")

    def delete_async(self, key: str) -> asyncio.Task[bool]:
        return self.submit(lambda: self.delete(key), name="delete")

    def expire_async(self, key: str, ttl_seconds: int) -> asyncio.Task[bool]:
        return self.submit(lambda: self.expire(key, ttl_seconds), name="expire")

    def get_ttl_async(self, key: str) -> asyncio.Task[int]:
        return self.submit(lambda: self.get_ttl(key), name="ttl")

    def set_object_async(
        self, key: str, value: Any, ttl_seconds: int | None = None
    ) -> asyncio.Task[bool]:
        return self.submit(lambda: self.set_object(key, value, ttl_seconds), name="set_object")

    def get_object_async(self, key: str, value_type: type[T]) -> asyncio.Task[T | None]:
        return self.submit(lambda: self.get_object(key, value_type), name="get_object")

    # -------------------------------------------------------------------------
    # Caches and messaging
    # -------------------------------------------------------------------------

    def get_cache(
        self, name: str, value_type: type[T], serializer: Serializer | None = None
    ) -> Cache[T]:
        """Return the cache called ``name``, creating it on first use.

        Asking again with another type or serializer re-points the existing
        instance at them; the last registration wins.
        """
        if self._state is not ManagerState.READY:
            raise ConnectionError("Manager is not initialized")

        cache = self._caches.get(name)
        if cache is None or cache.is_closed:
            cache = Cache(self, name, value_type, serializer or self.serializer)
            self._caches[name] = cache
            logger.debug(f"Created cache {name} for {getattr(value_type, '__name__', value_type)}")
            return cache

        cache.value_type = value_type
        if serializer is not None:
            cache.set_serializer(serializer)
        return cache

    @property
    def caches(self) -> dict[str, Cache[Any]]:
        return dict(self._caches)

    def publish(self, channel: str, message: str) -> asyncio.Task[int] | None:
        """Fire-and-forget publish."""
        return self.pubsub.publish(channel, message)

    def publish_object(self, channel: str, value: Any) -> asyncio.Task[int] | None:
        return self.pubsub.publish(channel, self.serializer.serialize(value))

    async def publish_sync(self, channel: str, message: str) -> int:
        return await self.pubsub.publish_sync(channel, message)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def run_maintenance(self) -> dict[str, Any]:
        """Run one maintenance pass: prune local tiers, then validate the pool."""
        removed = 0
        for cache in list(self._caches.values()):
            removed += cache.cleanup()

        healthy = False
        if self._connections is not None:
            healthy = await self._connections.validate_connections()

        if removed:
            logger.debug(f"Maintenance removed {removed} expired local entries")
        return {"expired_removed": removed, "pool_healthy": healthy}

    async def _maintenance_loop(self) -> None:
        """Periodic maintenance; exits once the manager leaves READY."""
        interval = self.config.maintenance_interval_seconds
        while self._state is ManagerState.READY:
            try:
                await asyncio.sleep(interval)
                if self._state is not ManagerState.READY:
                    break
                await self.run_maintenance()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Maintenance run failed: {e}")

    async def health_check(self) -> dict[str, Any]:
        """Return manager health status."""
        status: dict[str, Any] = {
            "state": self._state.value,
            "caches": len(self._caches),
        }
        if self._connections is not None:
            status["connection"] = await self._connections.health_check()
        if self._executor is not None:
            status["pending_tasks"] = self._executor.pending
        if self._pubsub is not None:
            status["subscriptions"] = self._pubsub.active_subscriptions
        return status
