"""
Serializer Contract

A Serializer turns a typed value into a wire string and back. The public
methods never raise: failures are sent to the ErrorReporter and surface as
an absent result (None), or as a DecodeResult carrying the error when the
caller uses try_deserialize().

Subclasses implement _encode() and _decode(); they may raise anything and
the base class turns it into a reported absent result.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from .errors import DecodeError, ErrorReporter, SerializationError, default_reporter

T = TypeVar("T")


@dataclass(frozen=True)
class DecodeResult(Generic[T]):
    """Either a decoded value or the error that prevented decoding."""

    value: Optional[T] = None
    error: Optional[SerializationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Optional[T]:
        """Return the value, raising the stored error if decoding failed."""
        if self.error is not None:
            raise self.error
        return self.value


class Serializer(ABC):
    """Base class for all wire serializers."""

    def __init__(self, errors: ErrorReporter | None = None) -> None:
        self._errors = errors or default_reporter

    @property
    def errors(self) -> ErrorReporter:
        return self._errors

    def serialize(self, value: Any) -> str | None:
        """Encode value to a wire string, or None if it cannot be encoded."""
        if value is None:
            return None
        try:
            return self._encode(value)
        except Exception as exc:
            self._errors.report(f"serialize {type(value).__name__}", exc)
            return None

    def deserialize(self, data: str | bytes | None, target: type[T]) -> T | None:
        """Decode data into target, or None if absent or malformed."""
        return self.try_deserialize(data, target).value

    def try_deserialize(self, data: str | bytes | None, target: type[T]) -> DecodeResult[T]:
        """
        Decode data into target and report how it went.

        Absent or blank input yields an empty, successful result. Any other
        failure is reported and returned as the result's error.
        """
        if isinstance(data, (bytes, bytearray)):
            try:
                data = bytes(data).decode("utf-8")
            except UnicodeDecodeError as exc:
                return self._failed(target, DecodeError(f"Payload is not UTF-8: {exc}", data))
        if data is None or not data.strip():
            return DecodeResult()
        try:
            return DecodeResult(value=self._decode(data, target))
        except SerializationError as exc:
            return self._failed(target, exc)
        except Exception as exc:
            error = DecodeError(f"Failed to deserialize: {exc}", data)
            error.__cause__ = exc
            return self._failed(target, error)

    def can_serialize(self, target: type) -> bool:
        """Whether values of target can round-trip. Conservative by default."""
        return True

    def _failed(self, target: type, error: SerializationError) -> DecodeResult[Any]:
        name = getattr(target, "__name__", repr(target))
        self._errors.report(f"deserialize {name}", error)
        return DecodeResult(error=error)

    @abstractmethod
    def _encode(self, value: Any) -> str:
        ...

    @abstractmethod
    def _decode(self, data: str, target: type) -> Any:
        ...
