"""
redis_feed — Redis pub/sub subscriptions with pluggable serialization.

Public API:
    RedisPubSubManager     — publish, subscribe, unsubscribe, shutdown
    RedisSubscription      — handle for one channel
    MultiChannelSubscription — handle for several channels on one listener
    PatternSubscription    — handle for a glob pattern
    ChannelMessage / PatternMessage — what multi/pattern handlers receive
    RedisConfig / RedisConnectionManager — broker settings and pool
    JsonSerializer / PickleSerializer / CustomSerializer — wire serializers
    RedisCache             — typed key/value cache, see RedisPubSubManager.get_cache()
"""
from .cache import CacheStats, RedisCache
from .config import ConfigurationError, RedisConfig
from .connection import PoolStats, RedisConnectionManager
from .custom_serializer import CustomSerializer
from .errors import (
    BrokerConnectionError,
    DecodeError,
    ErrorReporter,
    FeedError,
    PubSubError,
    SerializationError,
    SubscriptionError,
    TypeMismatchError,
)
from .json_serializer import JsonSerializer
from .manager import RedisPubSubManager
from .messages import ChannelMessage, PatternMessage
from .native_serializer import NativeSerializable, PickleSerializer
from .serializer import DecodeResult, Serializer
from .subscription import (
    MultiChannelSubscription,
    PatternSubscription,
    RedisSubscription,
    Subscription,
)

__all__ = [
    "RedisPubSubManager",
    "Subscription",
    "RedisSubscription",
    "MultiChannelSubscription",
    "PatternSubscription",
    "ChannelMessage",
    "PatternMessage",
    "RedisConfig",
    "ConfigurationError",
    "RedisConnectionManager",
    "PoolStats",
    "RedisCache",
    "CacheStats",
    "Serializer",
    "DecodeResult",
    "JsonSerializer",
    "PickleSerializer",
    "NativeSerializable",
    "CustomSerializer",
    "ErrorReporter",
    "FeedError",
    "BrokerConnectionError",
    "PubSubError",
    "SubscriptionError",
    "SerializationError",
    "DecodeError",
    "TypeMismatchError",
]
