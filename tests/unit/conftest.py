"""Shared fixtures for unit tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from redisync.config import StoreConfig
from redisync.manager import Manager
from tests.unit.fakes import FakeBroker, FakeClock, FakeStore, make_client, make_connections


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Clock shared by the fake store and the local cache tier."""
    fake = FakeClock()
    monkeypatch.setattr("redisync.cache._now_ms", fake)
    return fake


@pytest.fixture
def store(clock: FakeClock) -> FakeStore:
    return FakeStore(clock)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def redis_client(store: FakeStore, broker: FakeBroker) -> AsyncMock:
    return make_client(store, broker)


@pytest.fixture
def connections(redis_client: AsyncMock) -> MagicMock:
    return make_connections(redis_client)


@pytest.fixture
def config() -> StoreConfig:
    return StoreConfig(host="localhost", port=6379, maintenance_interval_seconds=3600)


@pytest_asyncio.fixture
async def manager(
    monkeypatch: pytest.MonkeyPatch, config: StoreConfig, connections: MagicMock
) -> AsyncIterator[Manager]:
    """Initialized manager running on the fake connection layer."""
    monkeypatch.setattr("redisync.manager.ConnectionManager", MagicMock(return_value=connections))
    instance = Manager(config)
    await instance.initialize()
    yield instance
    await instance.shutdown()
