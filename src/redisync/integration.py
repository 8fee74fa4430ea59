"""Start and stop a Manager from application settings.

Example:
    manager = await start_manager()
    try:
        ...
    finally:
        await stop_manager(manager)
"""

from __future__ import annotations

import logging

from redisync.config import Settings, StoreConfig, settings
from redisync.manager import Manager
from redisync.observability.logging import configure_logging

logger = logging.getLogger(__name__)


def create_manager(source: Settings | None = None) -> Manager | None:
    """Build an uninitialized Manager, or None if redisync is disabled."""
    source = source or settings
    if not source.enabled:
        logger.info("Redis integration disabled by configuration")
        return None
    return Manager(StoreConfig.from_settings(source))


async def start_manager(
    source: Settings | None = None, setup_logging: bool = False
) -> Manager | None:
    """Create and initialize a Manager from settings.

    Raises:
        ConfigurationError: If the settings are invalid.
        ConnectionError: If Redis is unreachable.
    """
    source = source or settings
    if setup_logging:
        configure_logging(json_format=source.log_json, level=source.log_level)

    manager = create_manager(source)
    if manager is None:
        return None
    await manager.initialize()
    return manager


async def stop_manager(manager: Manager | None) -> None:
    """Shut the manager down if there is one."""
    if manager is not None:
        await manager.shutdown()
