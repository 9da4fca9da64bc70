"""
Typed Key/Value Cache

A RedisCache stores values of one type under `<key_prefix>cache:<name>:<key>`,
encoded with a Serializer. Reads go through a small in-process copy first;
entries there expire together with the Redis TTL they were read or written
with.

Usage:
    players = manager.get_cache("players", Player)
    await players.put("ann", Player(name="ann", level=3), ttl=60)
    ann = await players.get("ann")
    bob = await players.get_or_compute("bob", load_player_from_db)

Broker failures are reported and turned into a neutral result (None, False,
-2), the same way publish failures are.
"""
from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar, Union

from redis.exceptions import RedisError

from .connection import RedisConnectionManager
from .errors import BrokerConnectionError, ErrorReporter, default_reporter
from .json_serializer import JsonSerializer
from .serializer import Serializer

logger = logging.getLogger(__name__)

T = TypeVar("T")

Supplier = Callable[[], Union[Optional[T], Awaitable[Optional[T]]]]

# TTL answers from Redis
NO_EXPIRY = -1
MISSING = -2

_BROKER_ERRORS = (RedisError, BrokerConnectionError, OSError)


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of the in-process copy."""

    total: int
    valid: int

    @property
    def expired(self) -> int:
        return self.total - self.valid


@dataclass(frozen=True)
class _Entry:
    value: Any
    expires_at: Optional[float]  # time.monotonic() deadline, None = never

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() > self.expires_at


def _deadline(ttl: float) -> Optional[float]:
    return time.monotonic() + ttl if ttl > 0 else None


class RedisCache(Generic[T]):
    """
    Redis-backed cache for values of a single type.

    Args:
        connections:     Connection manager providing the shared client.
        name:            Cache name, part of every key.
        value_type:      Type values are decoded into.
        serializer:      Wire serializer (JsonSerializer by default).
        errors:          Where broker and serialization failures go.
        use_local_cache: Keep an in-process copy of read/written values.
    """

    def __init__(
        self,
        connections: RedisConnectionManager,
        name: str,
        value_type: type[T],
        serializer: Optional[Serializer] = None,
        errors: Optional[ErrorReporter] = None,
        use_local_cache: bool = True,
    ) -> None:
        self._connections = connections
        self._name = name
        self._value_type = value_type
        self._errors = errors or default_reporter
        self._serializer = serializer or JsonSerializer(errors=self._errors)
        self._key_prefix = f"{connections.config.key_prefix}cache:{name}:"
        self._local: Optional[dict[str, _Entry]] = {} if use_local_cache else None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def value_type(self) -> type[T]:
        return self._value_type

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def default_ttl(self) -> int:
        return self._connections.config.default_ttl

    def redis_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    # ── Basic operations ──────────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[T]:
        """Value for key, or None when absent, undecodable or unreachable."""
        if self._closed:
            return None
        entry = self._local_entry(key)
        if entry is not None:
            return entry.value

        redis_key = self.redis_key(key)
        try:
            client = self._connections.client
            raw = await client.get(redis_key)
            if raw is None:
                return None
            value = self._serializer.deserialize(raw, self._value_type)
            if value is not None and self._local is not None:
                ttl = await client.ttl(redis_key)
                if ttl > 0 or ttl == NO_EXPIRY:
                    self._remember(key, value, max(ttl, 0))
        except _BROKER_ERRORS as exc:
            self._errors.report(f"cache get '{self._name}'", exc)
            return None
        return value

    async def put(self, key: str, value: T, ttl: Optional[int] = None) -> bool:
        """
        Store value under key.

        ttl defaults to the config's default_ttl; zero or less stores the
        value without expiry. Returns False if nothing was stored.
        """
        if self._closed:
            return False
        if ttl is None:
            ttl = self.default_ttl
        payload = self._serializer.serialize(value)
        if payload is None:
            logger.warning(
                "Nothing cached in '%s' for %s: value could not be serialized", self._name, key
            )
            return False
        try:
            client = self._connections.client
            if ttl > 0:
                await client.set(self.redis_key(key), payload, ex=ttl)
            else:
                await client.set(self.redis_key(key), payload)
        except _BROKER_ERRORS as exc:
            self._errors.report(f"cache put '{self._name}'", exc)
            return False
        if self._local is not None:
            self._remember(key, value, ttl)
        return True

    async def remove(self, key: str) -> bool:
        """Delete key. Returns True if Redis held it."""
        if self._closed:
            return False
        self._forget(key)
        try:
            removed = await self._connections.client.delete(self.redis_key(key))
        except _BROKER_ERRORS as exc:
            self._errors.report(f"cache remove '{self._name}'", exc)
            return False
        return removed > 0

    async def exists(self, key: str) -> bool:
        if self._closed:
            return False
        if self._local_entry(key) is not None:
            return True
        try:
            return await self._connections.client.exists(self.redis_key(key)) > 0
        except _BROKER_ERRORS as exc:
            self._errors.report(f"cache exists '{self._name}'", exc)
            return False

    # ── Compound operations ───────────────────────────────────────────────────

    async def get_or_compute(
        self,
        key: str,
        supplier: Supplier[T],
        ttl: Optional[int] = None,
    ) -> Optional[T]:
        """
        Cached value for key, or supplier()'s result stored under key.

        supplier may be a plain function or a coroutine function. A None
        result is returned but not cached; supplier errors are reported.
        """
        value = await self.get(key)
        if value is not None:
            return value
        try:
            value = supplier()
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            self._errors.report(f"cache compute '{self._name}'", exc)
            return None
        if value is not None:
            await self.put(key, value, ttl)
        return value

    async def get_many(self, keys: Iterable[str]) -> dict[str, T]:
        """Values for every key that is present; absent keys are left out."""
        result: dict[str, T] = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                result[key] = value
        return result

    async def put_many(self, values: dict[str, T], ttl: Optional[int] = None) -> int:
        """Store every item. Returns how many were stored."""
        stored = 0
        for key, value in values.items():
            if await self.put(key, value, ttl):
                stored += 1
        return stored

    async def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of key. Returns False if key does not exist."""
        if self._closed:
            return False
        try:
            updated = bool(await self._connections.client.expire(self.redis_key(key), ttl))
        except _BROKER_ERRORS as exc:
            self._errors.report(f"cache expire '{self._name}'", exc)
            return False
        if updated and self._local is not None:
            with self._lock:
                entry = self._local.get(key)
                if entry is not None:
                    self._local[key] = _Entry(entry.value, _deadline(ttl))
        return updated

    async def ttl(self, key: str) -> int:
        """Seconds left for key; -1 without expiry, -2 when missing or unknown."""
        if self._closed:
            return MISSING
        try:
            return int(await self._connections.client.ttl(self.redis_key(key)))
        except _BROKER_ERRORS as exc:
            self._errors.report(f"cache ttl '{self._name}'", exc)
            return MISSING

    # ── Local copy ────────────────────────────────────────────────────────────

    def cleanup(self) -> int:
        """Drop expired local entries. Returns how many were dropped."""
        if self._local is None:
            return 0
        with self._lock:
            expired = [key for key, entry in self._local.items() if entry.is_expired]
            for key in expired:
                del self._local[key]
        return len(expired)

    def clear_local_cache(self) -> None:
        if self._local is not None:
            with self._lock:
                self._local.clear()

    def local_stats(self) -> CacheStats:
        if self._local is None:
            return CacheStats(total=0, valid=0)
        with self._lock:
            entries = list(self._local.values())
        return CacheStats(total=len(entries), valid=sum(not e.is_expired for e in entries))

    def close(self) -> None:
        """Stop serving requests and drop the local copy. Redis keys are kept."""
        self._closed = True
        self.clear_local_cache()
        logger.debug("Cache '%s' closed", self._name)

    def _local_entry(self, key: str) -> Optional[_Entry]:
        if self._local is None:
            return None
        with self._lock:
            entry = self._local.get(key)
            if entry is not None and entry.is_expired:
                del self._local[key]
                return None
            return entry

    def _remember(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._local[key] = _Entry(value, _deadline(ttl))

    def _forget(self, key: str) -> None:
        if self._local is not None:
            with self._lock:
                self._local.pop(key, None)

    def __repr__(self) -> str:
        return f"<RedisCache {self._name} of {self._value_type.__name__}>"
