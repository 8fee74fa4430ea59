"""Message envelopes handed to multi-channel and pattern subscribers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ChannelMessage:
    """A message received on a concrete channel."""

    channel: str
    message: str
    timestamp_ms: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass(frozen=True)
class PatternMessage:
    """A message received through a pattern subscription."""

    pattern: str
    channel: str
    message: str
    timestamp_ms: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "channel": self.channel,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
        }
