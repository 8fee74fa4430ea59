"""Structured logging for redisync.

Log records emitted while a cache, channel or operation is in scope carry
that context, whichever formatter renders them:

- JsonFormatter: one JSON object per line, for log shippers
- ConsoleFormatter: aligned plain text for local development

Usage:
    from redisync.observability.logging import configure_logging

    configure_logging(json_format=False, level="DEBUG")
"""

from __future__ import annotations

import contextvars
import logging
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

cache_name_var: contextvars.ContextVar[str] = contextvars.ContextVar("cache_name", default="")
channel_var: contextvars.ContextVar[str] = contextvars.ContextVar("channel", default="")
operation_var: contextvars.ContextVar[str] = contextvars.ContextVar("operation", default="")

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "cache_name": cache_name_var,
    "channel": channel_var,
    "operation": operation_var,
}

# Short names used by the console output
_CONSOLE_LABELS = {"cache_name": "cache", "channel": "channel", "operation": "op"}

# Attributes every LogRecord has; anything else was passed through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def current_context() -> dict[str, str]:
    """Return the non-empty log context values for the running task."""
    return {key: var.get() for key, var in _CONTEXT_VARS.items() if var.get()}


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON.

    Example output:
        {"timestamp":"2026-01-10T12:34:56.789+00:00","level":"ERROR",
         "logger":"redisync.pubsub.subscriptions","message":"Handler raised",
         "channel":"chat","exception":{"type":"ValueError",...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(current_context())
        payload.update(_extras(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }

        return orjson.dumps(payload, default=str).decode("utf-8")


class ConsoleFormatter(logging.Formatter):
    """Readable single-line output.

    Example output:
        12:34:56.789 INFO     redisync.cache  Cache sessions closed  [cache=sessions]
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def _level(self, record: logging.LogRecord) -> str:
        name = f"{record.levelname:<8}"
        if not self.use_colors:
            return name
        return f"{self.LEVEL_COLORS.get(record.levelno, '')}{name}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{clock}.{int(record.msecs):03d} {self._level(record)} "
            f"{record.name}  {record.getMessage()}"
        )

        context = current_context()
        if context:
            tags = " ".join(f"{_CONSOLE_LABELS[k]}={v}" for k, v in context.items())
            line = f"{line}  [{tags}]"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    use_colors: bool = True,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        json_format: Emit JSON lines instead of console text
        level: Root log level name
        use_colors: Colorize levels when writing to a terminal
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else ConsoleFormatter(use_colors))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    # redis-py logs every reconnect at INFO
    logging.getLogger("redis").setLevel(logging.WARNING)


class LogContext:
    """Scope log context values to a block.

    Usage:
        with LogContext(cache_name="sessions", operation="get"):
            logger.info("Reading through")
    """

    def __init__(self, **values: str) -> None:
        unknown = set(values) - set(_CONTEXT_VARS)
        if unknown:
            raise ValueError(f"Unknown log context keys: {sorted(unknown)}")
        self.values = values
        self._tokens: list[tuple[contextvars.ContextVar[str], contextvars.Token[str]]] = []

    def __enter__(self) -> LogContext:
        for key, value in self.values.items():
            var = _CONTEXT_VARS[key]
            self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
