"""Exception hierarchy for redisync.

Every error raised by the package derives from RedisyncError so callers can
catch the whole family at once. Errors from redis-py are chained with
``raise ... from e`` rather than leaked directly.
"""

from __future__ import annotations


class RedisyncError(Exception):
    """Base class for all redisync errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(RedisyncError):
    """Raised when configuration is invalid or a lifecycle call is out of order."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConnectionError(RedisyncError):  # noqa: A001
    """Raised when a connection cannot be established or borrowed."""


class OperationError(RedisyncError):
    """Raised when an individual Redis command fails."""

    def __init__(self, message: str, operation: str | None = None, key: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.key = key


class SubscriptionError(RedisyncError):
    """Raised when a subscription cannot be created or its listener fails."""

    def __init__(self, message: str, channel: str | None = None) -> None:
        super().__init__(message)
        self.channel = channel


class SerializationError(RedisyncError):
    """Raised when a value cannot be serialized or a payload cannot be decoded."""

    def __init__(self, message: str, target_type: type | None = None) -> None:
        super().__init__(message)
        self.target_type = target_type
