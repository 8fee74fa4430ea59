"""Pooled connection management for the remote store.

Wraps a redis-py BlockingConnectionPool bounded at ``max_total`` connections.
Borrowers beyond capacity wait up to ``max_wait_ms`` and then fail with
ConnectionError. The pool can be validated periodically and rebuilt when it
goes bad.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from redis.asyncio import BlockingConnectionPool, Redis
from redis.asyncio.connection import Connection, SSLConnection
from redis.exceptions import RedisError

from redisync.config import StoreConfig
from redisync.errors import ConnectionError

logger = logging.getLogger(__name__)

# Pause between tearing the pool down and rebuilding it
REINITIALIZE_BACKOFF_SECONDS = 1.0


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool occupancy."""

    active: int
    idle: int
    waiting: int
    max_total: int

    def to_dict(self) -> dict[str, int]:
        return {
            "active": self.active,
            "idle": self.idle,
            "waiting": self.waiting,
            "max_total": self.max_total,
        }


class ConnectionManager:
    """Owns the connection pool lifecycle.

    Features:
    - Bounded pool with blocking borrow and max-wait timeout
    - Liveness ping on initialize, optional validation on borrow/return
    - Idle connection warm-up (min_idle) and trimming (max_idle)
    - Drain-then-rebuild recovery via reinitialize()
    """

    def __init__(self, config: StoreConfig, **pool_options: Any) -> None:
        self.config = config
        self._pool_options = pool_options
        self._pool: BlockingConnectionPool | None = None
        self._lock = asyncio.Lock()
        self._waiting = 0
        self.reinitialize_backoff = REINITIALIZE_BACKOFF_SECONDS

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    def _build_pool(self) -> BlockingConnectionPool:
        config = self.config
        timeout = config.timeout_ms / 1000
        options: dict[str, Any] = {
            "max_connections": config.max_total,
            "timeout": config.max_wait_ms / 1000,
            "connection_class": SSLConnection if config.ssl else Connection,
            "host": config.host,
            "port": config.port,
            "db": config.database,
            "password": config.password,
            "socket_timeout": timeout,
            "socket_connect_timeout": timeout,
            "decode_responses": True,
            # Connections idle longer than this are pinged before reuse
            "health_check_interval": (
                config.eviction_interval_ms / 1000 if config.test_while_idle else 0
            ),
        }
        options.update(self._pool_options)
        return BlockingConnectionPool(**options)

    async def initialize(self) -> None:
        """Validate config, build the pool and ping the server.

        Idempotent. Raises ConnectionError if the ping fails, after tearing
        down the partially built pool.
        """
        async with self._lock:
            if self._pool is not None:
                return

            self.config.validate()
            pool = self._build_pool()
            try:
                client = Redis(connection_pool=pool)
                await client.ping()
                await self._warm_up(pool)
            except (RedisError, OSError) as e:
                await pool.disconnect()
                logger.error(f"Failed to connect to Redis at {self.config.redis_url}: {e}")
                raise ConnectionError(
                    f"Cannot connect to Redis at {self.config.host}:{self.config.port}: {e}"
                ) from e

            self._pool = pool
            self._waiting = 0
            logger.info(
                f"Connected to Redis at {self.config.redis_url} "
                f"(max_total={self.config.max_total})"
            )

    async def _warm_up(self, pool: BlockingConnectionPool) -> None:
        """Open ``min_idle`` connections so first borrowers skip the handshake."""
        count = min(self.config.min_idle, self.config.max_total)
        if count <= 0:
            return
        clients = [
            Redis(connection_pool=pool, single_connection_client=True) for _ in range(count)
        ]
        try:
            for client in clients:
                await client.initialize()
            await asyncio.gather(*(client.ping() for client in clients))
        finally:
            for client in clients:
                await client.aclose()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Redis]:
        """Borrow one pooled connection for the duration of the block.

        Raises:
            ConnectionError: If not initialized, or no connection became
                available within ``max_wait_ms``.
        """
        pool = self._pool
        if pool is None:
            raise ConnectionError("Connection pool is not initialized")

        client = Redis(connection_pool=pool, single_connection_client=True)
        self._waiting += 1
        try:
            await client.initialize()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise ConnectionError(f"Could not borrow a connection: {e}") from e
        finally:
            self._waiting -= 1

        try:
            if self.config.test_on_borrow:
                await self._ping(client, "borrow")
            yield client
            if self.config.test_on_return:
                await self._check_on_return(client)
        finally:
            await client.aclose()

    async def _ping(self, client: Redis, stage: str) -> None:
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            if client.connection is not None:
                await client.connection.disconnect()
            raise ConnectionError(f"Connection failed validation on {stage}: {e}") from e

    async def _check_on_return(self, client: Redis) -> None:
        """Drop a connection that no longer answers instead of returning it as-is."""
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Connection failed validation on return, discarding: {e}")
            if client.connection is not None:
                await client.connection.disconnect()

    def client(self) -> Redis:
        """Pool-backed client for long-lived users such as pub/sub listeners."""
        if self._pool is None:
            raise ConnectionError("Connection pool is not initialized")
        return Redis(connection_pool=self._pool)

    async def validate_connections(self) -> bool:
        """Ping over a borrowed connection; rebuild the pool on failure.

        Returns:
            True if the pool answered, False if it had to be reinitialized.
        """
        if self._pool is None:
            return False
        try:
            async with self.connection() as client:
                await client.ping()
        except (ConnectionError, RedisError, OSError) as e:
            logger.warning(f"Connection validation failed, reinitializing pool: {e}")
            await self.reinitialize()
            return False

        await self._trim_idle()
        return True

    async def _trim_idle(self) -> None:
        """Close idle sockets beyond ``max_idle``; the pool reopens them on demand."""
        if self._pool is None:
            return
        idle = [c for c in self._available() if c.is_connected]
        excess = idle[self.config.max_idle :]
        for conn in excess:
            await conn.disconnect()
        if excess:
            logger.debug(f"Closed {len(excess)} idle connections above max_idle")

    def _available(self) -> list[Connection]:
        if self._pool is None:
            return []
        return list(getattr(self._pool, "_available_connections", []))

    def _in_use(self) -> list[Connection]:
        """Connections lent out by the pool, including those held by pub/sub listeners."""
        if self._pool is None:
            return []
        return list(getattr(self._pool, "_in_use_connections", []))

    async def reinitialize(self) -> None:
        """Shut down, back off briefly, then initialize again.

        Never raises; the outcome is logged.
        """
        logger.info("Reinitializing Redis connection pool")
        await self.shutdown()
        await asyncio.sleep(self.reinitialize_backoff)
        try:
            await self.initialize()
        except Exception as e:
            logger.error(f"Failed to reinitialize Redis connection pool: {e}")
        else:
            logger.info("Redis connection pool reinitialized")

    async def shutdown(self) -> None:
        """Disconnect every pooled connection. Idempotent."""
        async with self._lock:
            pool, self._pool = self._pool, None
            if pool is None:
                return
            try:
                await pool.disconnect()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis connection pool: {e}")
            logger.info("Redis connection pool shut down")

    def pool_stats(self) -> PoolStats:
        idle = sum(1 for c in self._available() if c.is_connected)
        return PoolStats(
            active=len(self._in_use()),
            idle=idle,
            waiting=self._waiting,
            max_total=self.config.max_total,
        )

    async def health_check(self) -> dict[str, Any]:
        """Return connection health status."""
        healthy = False
        if self._pool is not None:
            try:
                async with self.connection() as client:
                    healthy = bool(await client.ping())
            except (ConnectionError, RedisError, OSError) as e:
                logger.warning(f"Redis health check failed: {e}")
        return {
            "initialized": self.is_initialized,
            "healthy": healthy,
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "pool": self.pool_stats().to_dict(),
        }
