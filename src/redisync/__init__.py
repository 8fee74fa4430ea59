"""redisync: pooled Redis access, two-tier typed caches and pub/sub.

Provides:
- Manager: explicit handle over the connection pool with string and object
  primitives, background variants and periodic maintenance
- Cache: named, typed cache with a local tier in front of Redis
- PubSubManager: channel, multi-channel and pattern subscriptions
"""

from redisync.cache import Cache, CacheEntry, CacheState, LocalCacheStats
from redisync.config import Settings, StoreConfig, settings
from redisync.connection import ConnectionManager, PoolStats
from redisync.errors import (
    ConfigurationError,
    ConnectionError,
    OperationError,
    RedisyncError,
    SerializationError,
    SubscriptionError,
)
from redisync.executor import BackgroundExecutor
from redisync.integration import create_manager, start_manager, stop_manager
from redisync.keys import CacheKeys
from redisync.manager import Manager, ManagerState
from redisync.pubsub import (
    ChannelMessage,
    ChannelSubscription,
    MultiChannelSubscription,
    PatternMessage,
    PatternSubscription,
    PubSubManager,
    Subscription,
)
from redisync.serialization import CustomSerializer, JsonSerializer, Serializer

__all__ = [
    # Facade
    "Manager",
    "ManagerState",
    "create_manager",
    "start_manager",
    "stop_manager",
    # Configuration
    "Settings",
    "StoreConfig",
    "settings",
    # Connections
    "ConnectionManager",
    "PoolStats",
    "BackgroundExecutor",
    # Caching
    "Cache",
    "CacheEntry",
    "CacheKeys",
    "CacheState",
    "LocalCacheStats",
    # Messaging
    "PubSubManager",
    "Subscription",
    "ChannelSubscription",
    "MultiChannelSubscription",
    "PatternSubscription",
    "ChannelMessage",
    "PatternMessage",
    # Serialization
    "Serializer",
    "JsonSerializer",
    "CustomSerializer",
    # Errors
    "RedisyncError",
    "ConfigurationError",
    "ConnectionError",
    "OperationError",
    "SubscriptionError",
    "SerializationError",
]
