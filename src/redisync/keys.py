"""Remote key and channel naming.

Every named cache lives in its own namespace inside the shared store:

    {key_prefix}cache:{cache_name}:{key}

e.g. ``redisync:cache:sessions:u1``.
"""

from __future__ import annotations


class CacheKeys:
    """Build and parse remote key names for a given prefix."""

    CACHE_SEGMENT = "cache"

    def __init__(self, key_prefix: str = "redisync:", channel_prefix: str = "redisync:pubsub:"):
        self.key_prefix = key_prefix
        self.channel_prefix = channel_prefix

    def cache_namespace(self, cache_name: str) -> str:
        """Prefix shared by every key of one named cache."""
        return f"{self.key_prefix}{self.CACHE_SEGMENT}:{cache_name}:"

    def cache_key(self, cache_name: str, key: str) -> str:
        return f"{self.cache_namespace(cache_name)}{key}"

    def cache_pattern(self, cache_name: str) -> str:
        """Glob matching every key of a named cache (for SCAN)."""
        return f"{self.cache_namespace(cache_name)}*"

    def channel(self, name: str) -> str:
        return f"{self.channel_prefix}{name}"

    def parse_cache_key(self, remote_key: str) -> tuple[str, str] | None:
        """Split a remote key into (cache_name, key).

        Returns None if the key does not belong to this prefix's cache space.
        """
        head = f"{self.key_prefix}{self.CACHE_SEGMENT}:"
        if not remote_key.startswith(head):
            return None
        rest = remote_key[len(head) :]
        cache_name, sep, key = rest.partition(":")
        if not sep or not cache_name:
            return None
        return cache_name, key
