"""
Custom Serializer

Wraps a fallback serializer and lets callers plug in per-type encode/decode
functions that take priority over it:

    serializer = (
        CustomSerializer()
        .register_serializer(Point, lambda p: f"{p.x},{p.y}", Point.parse)
        .register_serializer(Money, str, Money.parse)
    )

Lookup order for a type:
  1. a function registered for exactly that type;
  2. a function registered for a supertype, most derived first (the
     type's MRO decides; types reached only through ABC registration come
     after, in registration order);
  3. the fallback serializer (JsonSerializer unless told otherwise).

serialize() dispatches on the runtime type of the value, deserialize() on
the requested target type.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar, get_origin

from .errors import ErrorReporter, SerializationError
from .json_serializer import JsonSerializer
from .serializer import DecodeResult, Serializer

T = TypeVar("T")

SerializeFn = Callable[[Any], str]
DeserializeFn = Callable[[str], Any]


class CustomSerializer(Serializer):
    """Serializer with per-type overrides on top of a fallback."""

    def __init__(
        self,
        fallback: Serializer | None = None,
        errors: ErrorReporter | None = None,
    ) -> None:
        super().__init__(errors)
        self._fallback = fallback or JsonSerializer(errors=self.errors)
        self._serializers: dict[type, SerializeFn] = {}
        self._deserializers: dict[type, DeserializeFn] = {}
        self._lock = threading.RLock()

    @property
    def fallback(self) -> Serializer:
        return self._fallback

    # ── Registration ──────────────────────────────────────────────────────────

    def register_serializer(
        self,
        cls: type[T],
        serialize: Callable[[T], str],
        deserialize: Callable[[str], T],
    ) -> CustomSerializer:
        """Register (or replace) the functions used for exactly cls."""
        if not isinstance(cls, type):
            raise TypeError(f"register_serializer() needs a class, got {cls!r}")
        with self._lock:
            self._serializers[cls] = serialize
            self._deserializers[cls] = deserialize
        return self

    def unregister_serializer(self, cls: type) -> bool:
        """Drop the functions registered for exactly cls. Returns True if any were."""
        with self._lock:
            found = self._serializers.pop(cls, None) is not None
            self._deserializers.pop(cls, None)
        return found

    def registered_types(self) -> list[type]:
        with self._lock:
            return list(self._serializers)

    # ── Serializer API ────────────────────────────────────────────────────────

    def serialize(self, value: Any) -> str | None:
        if value is None:
            return None
        if self._resolve(type(value), self._serializers) is None:
            return self._fallback.serialize(value)
        return super().serialize(value)

    def try_deserialize(self, data: str | bytes | None, target: type[T]) -> DecodeResult[T]:
        if self._resolve(target, self._deserializers) is None:
            return self._fallback.try_deserialize(data, target)
        return super().try_deserialize(data, target)

    def can_serialize(self, target: type) -> bool:
        return (
            self._resolve(target, self._serializers) is not None
            or self._fallback.can_serialize(target)
        )

    def _encode(self, value: Any) -> str:
        fn = self._resolve(type(value), self._serializers)
        if fn is None:
            raise SerializationError(f"No serializer registered for {type(value).__name__}")
        encoded = fn(value)
        if not isinstance(encoded, str):
            raise SerializationError(
                f"Serializer for {type(value).__name__} returned "
                f"{type(encoded).__name__}, expected str"
            )
        return encoded

    def _decode(self, data: str, target: type) -> Any:
        fn = self._resolve(target, self._deserializers)
        if fn is None:
            raise SerializationError(f"No deserializer registered for {target.__name__}")
        return fn(data)

    # ── Lookup ────────────────────────────────────────────────────────────────

    def _resolve(self, cls: Any, table: dict[type, Any]) -> Any:
        if get_origin(cls) is not None or not isinstance(cls, type):
            return None
        with self._lock:
            fn = table.get(cls)
            if fn is not None:
                return fn
            candidates = [(registered, fn) for registered, fn in table.items()
                          if _is_subclass(cls, registered)]
        if not candidates:
            return None

        mro = cls.__mro__

        def specificity(item: tuple[type, Any]) -> int:
            registered = item[0]
            return mro.index(registered) if registered in mro else len(mro)

        # min() keeps the first of equal ranks, i.e. registration order.
        return min(candidates, key=specificity)[1]


def _is_subclass(cls: type, registered: type) -> bool:
    # Protocols with data members refuse issubclass()
    try:
        return issubclass(cls, registered)
    except TypeError:
        return False
