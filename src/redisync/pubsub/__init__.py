"""Publish/subscribe messaging."""

from redisync.pubsub.manager import PubSubManager
from redisync.pubsub.messages import ChannelMessage, PatternMessage
from redisync.pubsub.subscriptions import (
    ChannelSubscription,
    MultiChannelSubscription,
    PatternSubscription,
    Subscription,
)

__all__ = [
    "PubSubManager",
    "ChannelMessage",
    "PatternMessage",
    "Subscription",
    "ChannelSubscription",
    "MultiChannelSubscription",
    "PatternSubscription",
]
