"""
Native Serializer

Encodes objects with pickle and ships them as base64 text. Only types that
opt in through the NativeSerializable marker are accepted, either by
subclassing it or by calling NativeSerializable.register(SomeType).

Unpickling executes code chosen by whoever wrote the payload, so only use
this serializer on channels where every publisher is trusted.
"""
from __future__ import annotations

import base64
import binascii
import pickle
from abc import ABC
from typing import Any

from .errors import DecodeError, ErrorReporter, SerializationError, TypeMismatchError
from .serializer import Serializer


class NativeSerializable(ABC):
    """Marker for types that may travel through PickleSerializer."""

    __slots__ = ()


class PickleSerializer(Serializer):
    """Serializer for NativeSerializable types (pickle + base64)."""

    def __init__(
        self,
        errors: ErrorReporter | None = None,
        protocol: int = pickle.HIGHEST_PROTOCOL,
    ) -> None:
        super().__init__(errors)
        self._protocol = protocol

    def _encode(self, value: Any) -> str:
        if not isinstance(value, NativeSerializable):
            raise SerializationError(
                f"{type(value).__name__} is not marked NativeSerializable"
            )
        raw = pickle.dumps(value, protocol=self._protocol)
        return base64.b64encode(raw).decode("ascii")

    def _decode(self, data: str, target: type) -> Any:
        try:
            raw = base64.b64decode(data.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"Invalid base64 payload: {exc}", data) from exc
        try:
            obj = pickle.loads(raw)
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError, IndexError) as exc:
            raise DecodeError(f"Invalid pickle payload: {exc}", data) from exc
        if not isinstance(obj, target):
            raise TypeMismatchError(target, type(obj))
        return obj

    def can_serialize(self, target: type) -> bool:
        return isinstance(target, type) and issubclass(target, NativeSerializable)
