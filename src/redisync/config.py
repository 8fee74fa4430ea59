"""Configuration for redisync.

Settings are read from the environment (prefix ``REDISYNC_``) or a ``.env``
file via pydantic-settings, then frozen into a validated StoreConfig that the
runtime components consume.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from redisync.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REDISYNC_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    enabled: bool = True

    # Connection
    host: str = Field(default="localhost", validation_alias="REDIS_HOST")
    port: int = Field(default=6379, validation_alias="REDIS_PORT")
    password: str | None = Field(default=None, validation_alias="REDIS_PASSWORD")
    database: int = Field(default=0, validation_alias="REDIS_DB")
    timeout_ms: int = 2000
    ssl: bool = False

    # Pool
    max_total: int = 20
    max_idle: int = 10
    min_idle: int = 2
    max_wait_ms: int = 3000
    test_on_borrow: bool = True
    test_on_return: bool = False
    test_while_idle: bool = True
    eviction_interval_ms: int = 30000

    # Cache
    default_ttl_seconds: int = 3600
    key_prefix: str = "redisync:"

    # Pub/Sub
    pubsub_enabled: bool = True
    channel_prefix: str = "redisync:pubsub:"

    # Runtime
    maintenance_interval_seconds: float = 60.0
    executor_max_concurrency: int = 32

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()


@dataclass(frozen=True)
class StoreConfig:
    """Immutable connection, pool, cache and pub/sub options."""

    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    database: int = 0
    timeout_ms: int = 2000
    ssl: bool = False

    max_total: int = 20
    max_idle: int = 10
    min_idle: int = 2
    max_wait_ms: int = 3000
    test_on_borrow: bool = True
    test_on_return: bool = False
    test_while_idle: bool = True
    eviction_interval_ms: int = 30000

    default_ttl_seconds: int = 3600
    key_prefix: str = "redisync:"

    pubsub_enabled: bool = True
    channel_prefix: str = "redisync:pubsub:"

    maintenance_interval_seconds: float = 60.0
    executor_max_concurrency: int = 32

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> StoreConfig:
        """Create a validated config from application settings."""
        source = source or settings
        config = cls(
            host=source.host,
            port=source.port,
            password=source.password,
            database=source.database,
            timeout_ms=source.timeout_ms,
            ssl=source.ssl,
            max_total=source.max_total,
            max_idle=source.max_idle,
            min_idle=source.min_idle,
            max_wait_ms=source.max_wait_ms,
            test_on_borrow=source.test_on_borrow,
            test_on_return=source.test_on_return,
            test_while_idle=source.test_while_idle,
            eviction_interval_ms=source.eviction_interval_ms,
            default_ttl_seconds=source.default_ttl_seconds,
            key_prefix=source.key_prefix,
            pubsub_enabled=source.pubsub_enabled,
            channel_prefix=source.channel_prefix,
            maintenance_interval_seconds=source.maintenance_interval_seconds,
            executor_max_concurrency=source.executor_max_concurrency,
        )
        config.validate()
        return config

    def with_overrides(self, **changes: Any) -> StoreConfig:
        """Return a validated copy with the given fields replaced."""
        try:
            config = replace(self, **changes)
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration option: {e}") from e
        config.validate()
        return config

    def validate(self) -> None:
        """Check bounds, raising ConfigurationError on the first violation."""
        if not self.host or not self.host.strip():
            raise ConfigurationError("Host must not be empty", field="host")
        if not 1 <= self.port <= 65535:
            raise ConfigurationError(
                f"Port must be between 1 and 65535, got {self.port}", field="port"
            )
        if self.database < 0:
            raise ConfigurationError("Database index must be >= 0", field="database")
        if self.timeout_ms <= 0:
            raise ConfigurationError("Timeout must be positive", field="timeout_ms")
        if self.max_total <= 0:
            raise ConfigurationError("max_total must be positive", field="max_total")
        if self.max_idle < 0:
            raise ConfigurationError("max_idle must be >= 0", field="max_idle")
        if self.min_idle < 0:
            raise ConfigurationError("min_idle must be >= 0", field="min_idle")
        if self.min_idle > self.max_idle:
            raise ConfigurationError(
                f"min_idle ({self.min_idle}) cannot exceed max_idle ({self.max_idle})",
                field="min_idle",
            )
        if self.max_wait_ms < 0:
            raise ConfigurationError("max_wait_ms must be >= 0", field="max_wait_ms")
        if self.default_ttl_seconds <= 0:
            raise ConfigurationError(
                "Default TTL must be positive", field="default_ttl_seconds"
            )
        if self.maintenance_interval_seconds <= 0:
            raise ConfigurationError(
                "Maintenance interval must be positive", field="maintenance_interval_seconds"
            )
        if self.executor_max_concurrency <= 0:
            raise ConfigurationError(
                "Executor concurrency must be positive", field="executor_max_concurrency"
            )

    @property
    def redis_url(self) -> str:
        """Connection URL with the password masked, for logs."""
        scheme = "rediss" if self.ssl else "redis"
        auth = ":***@" if self.password else ""
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.database}"

    def to_dict(self) -> dict[str, Any]:
        """Export options as a dictionary with the password masked."""
        data = asdict(self)
        if data["password"]:
            data["password"] = "***"
        return data
