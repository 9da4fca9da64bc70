"""
JSON Serializer

Default wire serializer.

  - str values pass through untouched.
  - bool, int, float and Decimal values travel as their canonical text
    ("true", "42", "1.5") and are parsed back according to the target type.
  - Everything else is encoded structurally as pretty-printed JSON:
    dataclasses in field order, mappings in insertion order, datetimes as
    "yyyy-MM-dd HH:mm:ss". Decoding rebuilds the target from its type hints.

Non-ASCII characters are written as-is (ensure_ascii=False) so a payload
re-encodes to the same bytes.
"""
from __future__ import annotations

import array
import dataclasses
import inspect
import json
import types
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal, Union, get_args, get_origin, get_type_hints
from uuid import UUID

from .errors import DecodeError, ErrorReporter
from .serializer import Serializer

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DAY_FORMAT = "%Y-%m-%d"

_SCALAR_TYPES = (bool, int, float, Decimal)
_BINARY_TYPES = (bytes, bytearray, memoryview, array.array)


class JsonSerializer(Serializer):
    """
    Serializer backed by the standard library json module.

    Args:
        errors: Where encode/decode failures are reported.
        indent: JSON indentation for structured values (None = compact).
    """

    def __init__(self, errors: ErrorReporter | None = None, indent: int | None = 2) -> None:
        super().__init__(errors)
        self._indent = indent

    # ── Encoding ──────────────────────────────────────────────────────────────

    def _encode(self, value: Any) -> str:
        if isinstance(value, Enum):
            return self._dumps(value)
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, _SCALAR_TYPES):
            return str(value)
        return self._dumps(value)

    def _dumps(self, value: Any) -> str:
        return json.dumps(to_jsonable(value), indent=self._indent, ensure_ascii=False)

    # ── Decoding ──────────────────────────────────────────────────────────────

    def _decode(self, data: str, target: type) -> Any:
        if target is str:
            return data
        if target in _SCALAR_TYPES:
            return _parse_scalar(data, target)
        try:
            raw = json.loads(data)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Invalid JSON: {exc}", data) from exc
        return from_jsonable(raw, target)

    def can_serialize(self, target: type) -> bool:
        """
        Reject binary/array types and abstract or protocol types.

        A bare dict target decodes JSON object keys as strings, so {1: "a"}
        comes back as {"1": "a"}; ask for dict[int, str] to get the keys typed.
        """
        if target is None:
            return False
        if get_origin(target) is not None:
            return True
        if not isinstance(target, type):
            return False
        if issubclass(target, _BINARY_TYPES):
            return False
        if inspect.isabstract(target) or getattr(target, "_is_protocol", False):
            return False
        return True


def _parse_scalar(data: str, target: type) -> Any:
    text = data.strip()
    if target is bool:
        lowered = text.lower()
        if lowered not in ("true", "false"):
            raise DecodeError(f"Cannot convert '{text}' to bool", data)
        return lowered == "true"
    try:
        return target(text)
    except (ValueError, InvalidOperation) as exc:
        raise DecodeError(f"Cannot convert '{text}' to {target.__name__}", data) from exc


def to_jsonable(obj: Any) -> Any:
    """Convert obj into plain JSON types (dict, list, str, int, float, bool, None)."""
    if isinstance(obj, Enum):
        return to_jsonable(obj.value)
    if obj is None or isinstance(obj, (str, bool, int, float)):
        return obj
    if isinstance(obj, datetime):
        return obj.strftime(DATE_FORMAT)
    if isinstance(obj, date):
        return obj.strftime(DAY_FORMAT)
    if isinstance(obj, (Decimal, UUID)):
        return str(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Mapping):
        return {_key_to_json(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in obj]
    if hasattr(obj, "__dict__"):
        return {k: to_jsonable(v) for k, v in vars(obj).items()}
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _key_to_json(key: Any) -> str:
    if isinstance(key, Enum):
        key = key.value
    if isinstance(key, str):
        return key
    if isinstance(key, (bool, int, float, Decimal, UUID)):
        return str(key)
    raise TypeError(f"Mapping key of type {type(key).__name__} is not JSON serializable")


def from_jsonable(value: Any, hint: Any) -> Any:
    """Rebuild a value of type hint from its plain JSON form."""
    if hint is Any or hint is object:
        return value

    origin = get_origin(hint)
    if origin is Union or origin is types.UnionType:
        return _from_union(value, hint)
    if value is None:
        if hint is type(None):
            return None
        raise DecodeError(f"null is not a valid {_name(hint)}")
    if origin is Literal:
        if value not in get_args(hint):
            raise DecodeError(f"{value!r} is not one of {get_args(hint)}")
        return value

    container = origin or hint
    if container in (list, set, frozenset, tuple):
        return _from_sequence(value, container, get_args(hint))
    if container is dict:
        return _from_mapping(value, get_args(hint))
    if origin is not None:
        return value
    if not isinstance(hint, type):
        return value

    if issubclass(hint, Enum):
        try:
            return hint(value)
        except ValueError as exc:
            raise DecodeError(f"{value!r} is not a valid {hint.__name__}") from exc
    if issubclass(hint, datetime):
        return _strptime(value, DATE_FORMAT, hint)
    if issubclass(hint, date):
        return _strptime(value, DAY_FORMAT, hint).date()
    if hint is Decimal:
        return _parse_scalar(str(value), Decimal)
    if hint is UUID:
        try:
            return UUID(str(value))
        except ValueError as exc:
            raise DecodeError(f"{value!r} is not a valid UUID") from exc
    if hint is bool:
        return _expect(value, bool, hint)
    if hint is int:
        if isinstance(value, bool):
            raise DecodeError(f"Expected int, got {value!r}")
        return _expect(value, int, hint)
    if hint is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise DecodeError(f"Expected float, got {value!r}")
        return float(value)
    if hint is str:
        return _expect(value, str, hint)
    if dataclasses.is_dataclass(hint):
        return _from_dataclass(value, hint)
    if isinstance(value, dict):
        return _from_object(value, hint)
    raise DecodeError(f"Cannot build {hint.__name__} from {type(value).__name__}")


def _from_union(value: Any, hint: Any) -> Any:
    args = get_args(hint)
    if value is None:
        if type(None) in args:
            return None
        raise DecodeError(f"null is not a valid {_name(hint)}")
    last: Exception | None = None
    for arg in args:
        if arg is type(None):
            continue
        try:
            return from_jsonable(value, arg)
        except (DecodeError, TypeError, ValueError) as exc:
            last = exc
    raise DecodeError(f"{value!r} matches no member of {_name(hint)}") from last


def _from_sequence(value: Any, container: type, args: tuple[Any, ...]) -> Any:
    if not isinstance(value, list):
        raise DecodeError(f"Expected a JSON array for {container.__name__}")
    if container is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(from_jsonable(item, args[0]) for item in value)
        if args:
            if len(args) != len(value):
                raise DecodeError(f"Expected {len(args)} items, got {len(value)}")
            return tuple(from_jsonable(item, arg) for item, arg in zip(value, args))
        return tuple(value)
    item_hint = args[0] if args else Any
    return container(from_jsonable(item, item_hint) for item in value)


def _from_mapping(value: Any, args: tuple[Any, ...]) -> dict[Any, Any]:
    if not isinstance(value, dict):
        raise DecodeError("Expected a JSON object for dict")
    key_hint, value_hint = args if len(args) == 2 else (Any, Any)
    return {
        _key_from_json(k, key_hint): from_jsonable(v, value_hint)
        for k, v in value.items()
    }


def _key_from_json(key: str, hint: Any) -> Any:
    if hint in (Any, str):
        return key
    if hint is bool:
        return _parse_scalar(key, bool)
    if hint in (int, float, Decimal):
        return _parse_scalar(key, hint)
    return from_jsonable(key, hint)


def _from_dataclass(value: Any, cls: type) -> Any:
    if not isinstance(value, dict):
        raise DecodeError(f"Expected a JSON object for {cls.__name__}")
    hints = _type_hints(cls)
    init_args: dict[str, Any] = {}
    late: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in value:
            continue
        converted = from_jsonable(value[f.name], hints.get(f.name, Any))
        if f.init:
            init_args[f.name] = converted
        else:
            late[f.name] = converted
    try:
        obj = cls(**init_args)
    except TypeError as exc:
        raise DecodeError(f"Cannot build {cls.__name__}: {exc}") from exc
    for name, converted in late.items():
        object.__setattr__(obj, name, converted)
    return obj


def _from_object(value: dict[str, Any], cls: type) -> Any:
    hints = _type_hints(cls)
    obj = cls.__new__(cls)
    for name, raw in value.items():
        obj.__dict__[name] = from_jsonable(raw, hints.get(name, Any))
    return obj


def _type_hints(cls: type) -> dict[str, Any]:
    try:
        return get_type_hints(cls)
    except (NameError, TypeError):
        # Unresolvable forward references; keep what is already concrete.
        return {
            name: hint
            for name, hint in getattr(cls, "__annotations__", {}).items()
            if not isinstance(hint, str)
        }


def _strptime(value: Any, fmt: str, hint: type) -> datetime:
    if not isinstance(value, str):
        raise DecodeError(f"Expected a date string for {hint.__name__}, got {value!r}")
    try:
        return datetime.strptime(value, fmt)
    except ValueError as exc:
        raise DecodeError(f"'{value}' does not match {fmt}") from exc


def _expect(value: Any, kind: type, hint: Any) -> Any:
    if not isinstance(value, kind):
        raise DecodeError(f"Expected {_name(hint)}, got {type(value).__name__}")
    return value


def _name(hint: Any) -> str:
    return getattr(hint, "__name__", None) or repr(hint)
