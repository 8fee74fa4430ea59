"""Observability helpers for redisync."""

from redisync.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    configure_logging,
)

__all__ = ["ConsoleFormatter", "JsonFormatter", "LogContext", "configure_logging"]
