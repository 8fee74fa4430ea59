"""Integration test fixtures using Docker.

Every test runs against a real Redis server started once per session.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
from redis.asyncio import Redis
from redis.exceptions import RedisError

from redisync.config import StoreConfig
from redisync.manager import Manager
from tests.integration.docker_utils import RedisService, get_docker_client, remove_stale, run_redis

REDIS_PASSWORD = "redisync-it"


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_service(docker_client) -> Iterator[RedisService]:
    """Start Redis for the test session."""
    remove_stale(docker_client)
    with run_redis(docker_client, password=REDIS_PASSWORD) as service:
        yield service


@pytest.fixture(scope="session")
def redis_config(redis_service: RedisService) -> StoreConfig:
    """Config pointing at the container, with maintenance out of the way."""
    return StoreConfig(
        host=redis_service.host,
        port=redis_service.port,
        password=redis_service.password,
        key_prefix="it:",
        channel_prefix="it:pubsub:",
        maintenance_interval_seconds=3600,
    )


@pytest_asyncio.fixture
async def redis_client(redis_config: StoreConfig) -> AsyncIterator[Redis]:
    """Plain client for inspecting the server; flushes the database afterwards."""
    client = Redis(
        host=redis_config.host,
        port=redis_config.port,
        password=redis_config.password,
        decode_responses=True,
    )
    await _wait_for_redis(client)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest_asyncio.fixture
async def manager(redis_config: StoreConfig, redis_client: Redis) -> AsyncIterator[Manager]:
    """Initialized manager against the container."""
    instance = Manager(redis_config)
    await instance.initialize()
    instance.pubsub.poll_timeout = 0.1
    yield instance
    await instance.shutdown()


async def _wait_for_redis(client: Redis, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except (RedisError, OSError):
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
