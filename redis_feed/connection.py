"""
Redis Connection Manager

Owns the pooled redis.asyncio client shared by every publisher and
subscription. Each PubSub handed out by pubsub() checks its own
connection out of the same pool.

Usage:
    connections = RedisConnectionManager(RedisConfig(host="localhost"))
    await connections.initialize()
    await connections.client.publish("chan", "hello")
    await connections.shutdown()
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from .config import RedisConfig
from .errors import BrokerConnectionError, ErrorReporter, default_reporter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolStats:
    """Snapshot of the connection pool."""

    in_use: int
    idle: int
    max_connections: int

    @property
    def total(self) -> int:
        return self.in_use + self.idle


class RedisConnectionManager:
    """
    Lifecycle wrapper around a pooled Redis client.

    Args:
        config:          Broker settings. Validated on initialize().
        errors:          Where connection failures are reported.
        reconnect_delay: Pause between shutdown and initialize in reinitialize().
    """

    def __init__(
        self,
        config: RedisConfig | None = None,
        errors: ErrorReporter | None = None,
        reconnect_delay: float = 1.0,
    ) -> None:
        self._config = config or RedisConfig()
        self._errors = errors or default_reporter
        self._reconnect_delay = reconnect_delay
        self._client: Redis | None = None
        self._lock = asyncio.Lock()

    @property
    def config(self) -> RedisConfig:
        return self._config

    @property
    def address(self) -> str:
        return f"{self._config.host}:{self._config.port}"

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the pool and PING the broker. No-op when already connected."""
        async with self._lock:
            if self._client is not None:
                return

            self._config.validate()
            client = Redis.from_url(
                self._config.url,
                password=self._config.password,
                decode_responses=False,
                max_connections=self._config.max_connections,
                socket_timeout=self._config.timeout,
                socket_connect_timeout=self._config.timeout,
                health_check_interval=self._config.health_check_interval,
            )
            try:
                await client.ping()
            except RedisError as exc:
                self._errors.report("connect", exc)
                await self._close_quietly(client)
                raise BrokerConnectionError(
                    f"Cannot connect to Redis: {exc}", address=self.address
                ) from exc

            self._client = client
            logger.info("Redis connection pool ready at %s", self.address)

    async def shutdown(self) -> None:
        """Close the client and its pool. Safe to call repeatedly."""
        async with self._lock:
            client, self._client = self._client, None
            if client is None:
                return
            try:
                await client.aclose()
            except RedisError as exc:
                self._errors.report("shutdown", exc)
            logger.info("Redis connection pool at %s closed", self.address)

    async def reinitialize(self) -> None:
        """Drop the pool and build a new one. Failures are reported, not raised."""
        logger.info("Reinitializing Redis connection pool at %s", self.address)
        await self.shutdown()
        await asyncio.sleep(self._reconnect_delay)
        try:
            await self.initialize()
        except BrokerConnectionError as exc:
            self._errors.report("reinitialize", exc)

    async def validate_connections(self) -> bool:
        """PING the broker, rebuilding the pool if that fails. Returns the PING outcome."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except RedisError as exc:
            self._errors.report("validate connections", exc)
            await self.reinitialize()
            return False

    # ── Access ────────────────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise BrokerConnectionError(
                "Redis connection is not initialized — call initialize() first",
                address=self.address,
            )
        return self._client

    def pubsub(self) -> PubSub:
        """A new PubSub on the shared pool. Subscribe confirmations are kept."""
        return self.client.pubsub(ignore_subscribe_messages=False)

    def pool_stats(self) -> PoolStats:
        if self._client is None:
            return PoolStats(in_use=0, idle=0, max_connections=self._config.max_connections)
        pool = self._client.connection_pool
        return PoolStats(
            in_use=len(getattr(pool, "_in_use_connections", ())),
            idle=len(getattr(pool, "_available_connections", ())),
            max_connections=self._config.max_connections,
        )

    async def _close_quietly(self, client: Redis) -> None:
        try:
            await client.aclose()
        except RedisError as exc:
            logger.debug("Ignoring error while closing failed client: %s", exc)
