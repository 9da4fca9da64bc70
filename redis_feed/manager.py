"""
Redis Pub/Sub Manager

Single owner of the broker connection pool, the listener tasks and every
subscription handle.

Usage:
    manager = RedisPubSubManager.from_config(RedisConfig(host="localhost"))
    await manager.initialize()

    sub = await manager.subscribe("events", print)
    multi = await manager.subscribe_many(["a", "b"], handle_channel_message)
    pat = await manager.subscribe_pattern("events:*", handle_pattern_message)

    manager.publish("events", '{"type": "join"}')    # fire-and-forget
    await manager.send("events", "hello")           # waits, returns receivers

    players = manager.get_cache("players", Player)
    await players.put("ann", ann, ttl=60)

    await sub.cancel()
    await manager.shutdown()

Context manager usage:
    async with RedisPubSubManager.from_config(config) as manager:
        await manager.subscribe("events", handler, message_type=Event)

Publishing is serialization-agnostic: publish()/send() take wire strings.
publish_object() and subscribe(..., message_type=...) are conveniences that
run values through the manager's serializer (JsonSerializer by default).
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Iterable, Optional, TypeVar

from redis.exceptions import RedisError

from .cache import RedisCache
from .config import RedisConfig
from .connection import RedisConnectionManager
from .errors import (
    BrokerConnectionError,
    ErrorReporter,
    PubSubError,
    SubscriptionError,
    default_reporter,
)
from .json_serializer import JsonSerializer
from .listener import (
    ChannelListener,
    Decoder,
    Handler,
    Hook,
    Listener,
    MultiChannelListener,
    PatternListener,
)
from .serializer import Serializer
from .subscription import (
    MultiChannelSubscription,
    PatternSubscription,
    RedisSubscription,
    Subscription,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Subscription)
T = TypeVar("T")


class RedisPubSubManager:
    """
    Publishes to and subscribes on Redis pub/sub channels.

    Args:
        connections: Connection manager providing the shared pool.
        serializer:  Used by publish_object() and typed subscriptions.
        errors:      Where broker, handler and serialization failures go.
    """

    def __init__(
        self,
        connections: RedisConnectionManager,
        serializer: Optional[Serializer] = None,
        errors: Optional[ErrorReporter] = None,
    ) -> None:
        self._connections = connections
        self._errors = errors or default_reporter
        self._serializer = serializer or JsonSerializer(errors=self._errors)
        self._subscriptions: dict[Subscription, None] = {}
        self._channels: dict[str, list[Subscription]] = {}
        self._publishes: set[asyncio.Task[int]] = set()
        self._caches: dict[str, RedisCache[Any]] = {}
        self._lock = threading.Lock()
        self._lifecycle = asyncio.Lock()
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: Optional[RedisConfig] = None,
        serializer: Optional[Serializer] = None,
        errors: Optional[ErrorReporter] = None,
    ) -> RedisPubSubManager:
        connections = RedisConnectionManager(config, errors=errors)
        return cls(connections, serializer=serializer, errors=errors)

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def config(self) -> RedisConfig:
        return self._connections.config

    @property
    def connections(self) -> RedisConnectionManager:
        return self._connections

    @property
    def serializer(self) -> Serializer:
        return self._serializer

    @property
    def errors(self) -> ErrorReporter:
        return self._errors

    @property
    def cancel_timeout(self) -> float:
        return self.config.cancel_timeout

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def active_subscriptions(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscriptions(self) -> list[Subscription]:
        """Snapshot of every handle that has not been retired."""
        with self._lock:
            return list(self._subscriptions)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Connect to the broker. Raises BrokerConnectionError if it is unreachable."""
        async with self._lifecycle:
            if self._initialized:
                return
            await self._connections.initialize()
            self._initialized = True
            logger.info("Redis pub/sub manager initialized")

    async def shutdown(self) -> None:
        """Cancel every subscription, flush pending publishes and close the pool."""
        async with self._lifecycle:
            if not self._initialized:
                return
            logger.info("Shutting down Redis pub/sub manager...")
            self._initialized = False

            await self.unsubscribe_all()

            pending = list(self._publishes)
            if pending:
                _, unfinished = await asyncio.wait(pending, timeout=self.cancel_timeout)
                for task in unfinished:
                    task.cancel()

            with self._lock:
                caches, self._caches = list(self._caches.values()), {}
            for cache in caches:
                cache.close()

            await self._connections.shutdown()
            logger.info("Redis pub/sub manager shut down")

    async def __aenter__(self) -> RedisPubSubManager:
        await self.initialize()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.shutdown()

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise PubSubError(
                "RedisPubSubManager is not initialized — call initialize() first"
            )

    # ── Publish ───────────────────────────────────────────────────────────────

    def publish(self, channel: str, message: str) -> asyncio.Task[int]:
        """
        Send message to channel in the background.

        Failures are reported, not raised. The returned task resolves to the
        receiver count and may be ignored.

        Raises:
            PubSubError: If the manager is not initialized.
        """
        self._require_initialized()
        task = asyncio.get_running_loop().create_task(self._send(channel, message))
        self._publishes.add(task)
        task.add_done_callback(self._publishes.discard)
        return task

    def publish_many(self, channels: Iterable[str], message: str) -> list[asyncio.Task[int]]:
        """Fire-and-forget the same message to several channels."""
        return [self.publish(channel, message) for channel in channels]

    async def send(self, channel: str, message: str) -> int:
        """
        Publish and wait for the broker.

        Returns:
            Number of subscribers that received the message (0 on failure).

        Raises:
            PubSubError: If the manager is not initialized.
        """
        self._require_initialized()
        return await self._send(channel, message)

    def publish_object(
        self,
        channel: str,
        obj: Any,
        serializer: Optional[Serializer] = None,
    ) -> Optional[asyncio.Task[int]]:
        """Serialize obj and publish it. Nothing is sent if serialization fails."""
        payload = (serializer or self._serializer).serialize(obj)
        if payload is None:
            logger.warning(
                "Nothing published to '%s': %s could not be serialized",
                channel,
                type(obj).__name__,
            )
            return None
        return self.publish(channel, payload)

    async def _send(self, channel: str, message: str) -> int:
        try:
            receivers: int = await self._connections.client.publish(channel, message)
        except (RedisError, BrokerConnectionError, OSError) as exc:
            self._errors.report(f"publish to '{channel}'", exc)
            return 0
        logger.debug("Published to '%s', reached %d subscriber(s)", channel, receivers)
        return receivers

    # ── Subscribe ─────────────────────────────────────────────────────────────

    async def subscribe(
        self,
        channel: str,
        handler: Handler,
        *,
        message_type: Optional[type] = None,
        serializer: Optional[Serializer] = None,
        on_subscribe: Optional[Hook] = None,
        on_unsubscribe: Optional[Hook] = None,
    ) -> RedisSubscription:
        """
        Listen on one channel. handler receives each payload (decoded into
        message_type when given).

        Raises:
            PubSubError:       If the manager is not initialized.
            SubscriptionError: If the broker rejects or cannot be reached.
        """
        listener = self._listener(
            ChannelListener, handler, message_type, serializer, on_subscribe, on_unsubscribe
        )
        await self._open(listener, f"channel '{channel}'", channel)
        return self._start(RedisSubscription(channel, listener, self), [channel])

    async def subscribe_many(
        self,
        channels: Iterable[str],
        handler: Handler,
        *,
        message_type: Optional[type] = None,
        serializer: Optional[Serializer] = None,
        on_subscribe: Optional[Hook] = None,
        on_unsubscribe: Optional[Hook] = None,
    ) -> MultiChannelSubscription:
        """
        Listen on several channels with one listener. handler receives a
        ChannelMessage per payload.
        """
        channel_list = list(dict.fromkeys(channels))
        if not channel_list:
            raise ValueError("channels must be a non-empty list of channel names")
        listener = self._listener(
            MultiChannelListener, handler, message_type, serializer, on_subscribe, on_unsubscribe
        )
        await self._open(listener, f"channels {channel_list}", *channel_list)
        return self._start(MultiChannelSubscription(channel_list, listener, self), channel_list)

    async def subscribe_pattern(
        self,
        pattern: str,
        handler: Handler,
        *,
        message_type: Optional[type] = None,
        serializer: Optional[Serializer] = None,
        on_subscribe: Optional[Hook] = None,
        on_unsubscribe: Optional[Hook] = None,
    ) -> PatternSubscription:
        """
        Listen on every channel matching a glob pattern (e.g. "events:*").
        handler receives a PatternMessage per payload.
        """
        listener = self._listener(
            PatternListener, handler, message_type, serializer, on_subscribe, on_unsubscribe
        )
        await self._open(listener, f"pattern '{pattern}'", pattern)
        return self._start(PatternSubscription(pattern, listener, self), [])

    # ── Cache ───────────────────────────────────────────────────────────────────

    def get_cache(
        self,
        name: str,
        value_type: type[T],
        serializer: Optional[Serializer] = None,
    ) -> RedisCache[T]:
        """
        The cache called name, created on first use. Later calls return the
        same instance whatever value_type and serializer they pass.
        """
        with self._lock:
            cache = self._caches.get(name)
            if cache is None:
                cache = RedisCache(
                    self._connections,
                    name,
                    value_type,
                    serializer=serializer or self._serializer,
                    errors=self._errors,
                )
                self._caches[name] = cache
        return cache

    # ── Unsubscribe ───────────────────────────────────────────────────────────

    async def unsubscribe(self, channel: str) -> int:
        """
        Stop listening on an exact channel.

        Single-channel handles on it are cancelled; multi-channel handles
        drop just that channel unless it was their last one. Returns the
        number of handles affected.
        """
        with self._lock:
            owners = self._channels.pop(channel, [])
        for owner in owners:
            if isinstance(owner, MultiChannelSubscription) and len(owner.active_channels) > 1:
                await owner.cancel(channel)
            else:
                await owner.cancel()
        return len(owners)

    async def unsubscribe_all(self) -> None:
        """Cancel every handle this manager created."""
        snapshot = self.subscriptions()
        if snapshot:
            await asyncio.gather(*(subscription.cancel() for subscription in snapshot))

    # ── Internals ─────────────────────────────────────────────────────────────

    def _listener(
        self,
        kind: type[Listener],
        handler: Handler,
        message_type: Optional[type],
        serializer: Optional[Serializer],
        on_subscribe: Optional[Hook],
        on_unsubscribe: Optional[Hook],
    ) -> Listener:
        self._require_initialized()
        decode: Optional[Decoder] = None
        if message_type is not None:
            codec = serializer or self._serializer

            def decode(payload: str) -> Any:
                return codec.try_deserialize(payload, message_type)

        return kind(
            self._connections.pubsub(),
            handler,
            self._errors,
            decode=decode,
            on_subscribe=on_subscribe,
            on_unsubscribe=on_unsubscribe,
            poll_interval=self.config.listener_poll_interval,
        )

    async def _open(self, listener: Listener, label: str, *targets: str) -> None:
        try:
            await listener.subscribe(*targets)
        except (RedisError, OSError) as exc:
            self._errors.report(f"subscribe to {label}", exc)
            await listener.close()
            raise SubscriptionError(f"Cannot subscribe to {label}: {exc}", target=label) from exc

        if not self._initialized:
            # shutdown() ran while the SUBSCRIBE was in flight
            await listener.close()
            raise PubSubError("RedisPubSubManager was shut down during subscribe")

    def _start(self, subscription: S, channels: list[str]) -> S:
        task = asyncio.get_running_loop().create_task(
            self._listen(subscription),
            name=f"redis-feed {subscription.name}",
        )
        subscription._bind(task)
        with self._lock:
            self._subscriptions[subscription] = None
            for channel in channels:
                self._channels.setdefault(channel, []).append(subscription)
        logger.debug("Started listener for %s", subscription.name)
        return subscription

    async def _listen(self, subscription: Subscription) -> None:
        listener = subscription.subscriber
        try:
            await listener.run()
        except (RedisError, OSError) as exc:
            if subscription._mark_cancelled():
                self._errors.report(f"listen on {subscription.name}", exc)
                logger.warning(
                    "Broker connection lost for %s; subscription cancelled",
                    subscription.name,
                )
        finally:
            # A running cancel() closes the PubSub itself once its UNSUBSCRIBE is done
            if not subscription._owns_close:
                await listener.close()
            self._forget(subscription)

    def _forget(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription, None)
            for channel in list(self._channels):
                owners = [s for s in self._channels[channel] if s is not subscription]
                if owners:
                    self._channels[channel] = owners
                else:
                    del self._channels[channel]

    def _forget_channel(self, subscription: Subscription, channel: str) -> None:
        with self._lock:
            owners = [s for s in self._channels.get(channel, []) if s is not subscription]
            if owners:
                self._channels[channel] = owners
            else:
                self._channels.pop(channel, None)
