"""Bounded, cycle-safe serialization of runtime values."""

from __future__ import annotations

import collections
import datetime as dt
import enum
import functools
import inspect
import numbers
import reprlib
import types
from collections.abc import Callable, Iterator, Mapping, Set
from dataclasses import dataclass, field
from itertools import islice
from typing import TYPE_CHECKING, Any
from urllib.parse import ParseResult, SplitResult

if TYPE_CHECKING:
    from .config import AgentConfig

CIRCULAR = "<circular>"
SHARED = "<shared>"

# Integers a JSON double holds exactly; anything wider is tagged bigint.
_MAX_SAFE_INT = 2**53 - 1


class _Undefined:
    """Marker for a name that exists but has no value bound."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()


class ValueKind(enum.Enum):
    NULL = "null"
    UNDEFINED = "undefined"
    BOOLEAN = "boolean"
    NUMBER = "number"
    BIGINT = "bigint"
    STRING = "string"
    SYMBOL = "symbol"
    FUNCTION = "function"
    ARRAY = "array"
    DATE = "Date"
    ERROR = "Error"
    MAP = "Map"
    SET = "Set"
    URL = "URL"
    MODULE = "module"
    OBJECT = "object"


@dataclass
class CapturedVariable:
    """One node of a serialized value tree."""

    name: str
    type: str
    value: str
    is_null: bool = False
    is_truncated: bool = False
    children: dict[str, CapturedVariable] | None = None
    array_elements: list[CapturedVariable] | None = None
    array_length: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire form, camelCase keys, absent fields omitted."""
        result: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "value": self.value,
            "isNull": self.is_null,
            "isTruncated": self.is_truncated,
        }
        if self.children is not None:
            result["children"] = {k: v.to_dict() for k, v in self.children.items()}
        if self.array_elements is not None:
            result["arrayElements"] = [e.to_dict() for e in self.array_elements]
        if self.array_length is not None:
            result["arrayLength"] = self.array_length
        return result


@dataclass
class _Walk:
    """Limits, visited ids and current ancestor ids for one top-level call."""

    max_depth: int
    max_string_length: int
    max_collection_size: int
    seen: set[int] = field(default_factory=set)
    path: set[int] = field(default_factory=set)


def classify(value: Any) -> ValueKind:
    """Map a value onto the closed set of kinds the serializer handles."""
    if value is None:
        return ValueKind.NULL
    if value is UNDEFINED:
        return ValueKind.UNDEFINED
    if isinstance(value, enum.Enum):
        return ValueKind.SYMBOL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.BIGINT if abs(value) > _MAX_SAFE_INT else ValueKind.NUMBER
    if isinstance(value, numbers.Number):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if inspect.isroutine(value) or isinstance(value, functools.partial):
        return ValueKind.FUNCTION
    if isinstance(value, (ParseResult, SplitResult)):
        return ValueKind.URL
    if isinstance(value, (list, tuple, collections.deque)):
        return ValueKind.ARRAY
    if isinstance(value, (dt.date, dt.time)):
        return ValueKind.DATE
    if isinstance(value, BaseException):
        return ValueKind.ERROR
    if isinstance(value, Mapping) and not isinstance(value, dict):
        return ValueKind.MAP
    if isinstance(value, Set):
        return ValueKind.SET
    if isinstance(value, types.ModuleType):
        return ValueKind.MODULE
    return ValueKind.OBJECT


def truncate_str(s: str, max_len: int) -> tuple[str, bool]:
    """Cut a string to max_len, reporting whether anything was dropped."""
    if len(s) <= max_len:
        return s, False
    return s[:max_len], True


def _type_name(value: Any) -> str:
    try:
        return type(value).__name__ or "Object"
    except Exception:
        return "Object"


def safe_repr(value: Any, max_length: int) -> str:
    """Shallow single-line repr; falls back for unreprable objects."""
    r = reprlib.Repr()
    r.maxlevel = 1
    r.maxstring = max(max_length, 3)
    r.maxother = max(max_length, 3)
    try:
        text = r.repr(value)
    except Exception:
        text = f"<unreprable {_type_name(value)}>"
    return " ".join(text.splitlines())


def _leaf(name: str, kind: ValueKind, text: str, walk: _Walk) -> CapturedVariable:
    shown, truncated = truncate_str(text, walk.max_string_length)
    return CapturedVariable(name=name, type=kind.value, value=shown, is_truncated=truncated)


def _capture_null(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    return CapturedVariable(name=name, type="null", value="null", is_null=True)


def _capture_undefined(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    return CapturedVariable(name=name, type="undefined", value="undefined")


def _capture_primitive(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    # Decimal and Fraction can render arbitrarily long.
    return _leaf(name, classify(value), str(value), walk)


def _capture_bigint(name: str, value: int, depth: int, walk: _Walk) -> CapturedVariable:
    try:
        text = str(value)
    except ValueError:
        # int -> str conversion limit (sys.set_int_max_str_digits)
        text = f"<int with {value.bit_length()} bits>"
    return _leaf(name, ValueKind.BIGINT, text, walk)


def _capture_string(name: str, value: str, depth: int, walk: _Walk) -> CapturedVariable:
    return _leaf(name, ValueKind.STRING, str.__str__(value), walk)


def _capture_symbol(name: str, value: enum.Enum, depth: int, walk: _Walk) -> CapturedVariable:
    return _leaf(name, ValueKind.SYMBOL, str(value), walk)


def _capture_function(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    target = value.func if isinstance(value, functools.partial) else value
    fn_name = getattr(target, "__qualname__", None) or getattr(target, "__name__", None)
    if not fn_name or getattr(target, "__name__", None) == "<lambda>":
        fn_name = "anonymous"
    return CapturedVariable(name=name, type="function", value=f"[Function: {fn_name}]")


def _capture_array(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    length = len(value)
    captured = CapturedVariable(
        name=name,
        type=ValueKind.ARRAY.value,
        value=f"{_type_name(value)}[{length}]",
        array_length=length,
    )
    if depth < walk.max_depth and length <= walk.max_collection_size:
        captured.array_elements = [
            _capture(f"[{i}]", item, depth + 1, walk) for i, item in enumerate(value)
        ]
    return captured


def _capture_date(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    return CapturedVariable(name=name, type=ValueKind.DATE.value, value=value.isoformat())


def _capture_error(name: str, value: BaseException, depth: int, walk: _Walk) -> CapturedVariable:
    shown, truncated = truncate_str(str(value), walk.max_string_length)
    return CapturedVariable(
        name=name, type=_type_name(value), value=shown, is_truncated=truncated
    )


def _capture_map(name: str, value: Mapping, depth: int, walk: _Walk) -> CapturedVariable:
    return CapturedVariable(name=name, type=ValueKind.MAP.value, value=f"Map({len(value)})")


def _capture_set(name: str, value: Set, depth: int, walk: _Walk) -> CapturedVariable:
    return CapturedVariable(name=name, type=ValueKind.SET.value, value=f"Set({len(value)})")


def _capture_url(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    return _leaf(name, ValueKind.URL, value.geturl(), walk)


def _capture_module(name: str, value: types.ModuleType, depth: int, walk: _Walk) -> CapturedVariable:
    return CapturedVariable(name=name, type=ValueKind.MODULE.value, value=value.__name__)


def _own_properties(value: Any) -> Iterator[tuple[str, Any]]:
    """Yield (name, value) for a value's own properties."""
    if isinstance(value, dict):
        for k, v in value.items():
            yield (k if isinstance(k, str) else repr(k)), v
        return

    d = getattr(value, "__dict__", None)
    if isinstance(d, dict):
        yield from d.items()

    for cls in type(value).__mro__:
        slots = cls.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for slot in slots:
            if slot in ("__dict__", "__weakref__"):
                continue
            try:
                yield slot, getattr(value, slot)
            except AttributeError:
                continue


def _capture_object(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    preview, truncated = truncate_str(
        safe_repr(value, walk.max_string_length), walk.max_string_length
    )
    captured = CapturedVariable(
        name=name, type=_type_name(value), value=preview, is_truncated=truncated
    )
    if depth < walk.max_depth:
        children: dict[str, CapturedVariable] = {}
        for key, child in islice(_own_properties(value), walk.max_collection_size):
            children[key] = _capture(key, child, depth + 1, walk)
        if children:
            captured.children = children
    return captured


_Handler = Callable[[str, Any, int, _Walk], CapturedVariable]

_HANDLERS: dict[ValueKind, _Handler] = {
    ValueKind.NULL: _capture_null,
    ValueKind.UNDEFINED: _capture_undefined,
    ValueKind.BOOLEAN: _capture_primitive,
    ValueKind.NUMBER: _capture_primitive,
    ValueKind.BIGINT: _capture_bigint,
    ValueKind.STRING: _capture_string,
    ValueKind.SYMBOL: _capture_symbol,
    ValueKind.FUNCTION: _capture_function,
    ValueKind.ARRAY: _capture_array,
    ValueKind.DATE: _capture_date,
    ValueKind.ERROR: _capture_error,
    ValueKind.MAP: _capture_map,
    ValueKind.SET: _capture_set,
    ValueKind.URL: _capture_url,
    ValueKind.MODULE: _capture_module,
    ValueKind.OBJECT: _capture_object,
}

# Kinds whose handlers descend into the value.
_COMPOUND = {ValueKind.ARRAY, ValueKind.OBJECT}


def _placeholder(name: str, value: Any, marker: str) -> CapturedVariable:
    return CapturedVariable(name=name, type=_type_name(value), value=marker, is_truncated=True)


def _capture(name: str, value: Any, depth: int, walk: _Walk) -> CapturedVariable:
    try:
        kind = classify(value)
        if kind not in _COMPOUND:
            return _HANDLERS[kind](name, value, depth, walk)

        key = id(value)
        if key in walk.path:
            return _placeholder(name, value, CIRCULAR)
        # Each compound object is expanded once per top-level call.
        if key in walk.seen:
            return _placeholder(name, value, SHARED)
        walk.seen.add(key)
        walk.path.add(key)
        try:
            return _HANDLERS[kind](name, value, depth, walk)
        finally:
            walk.path.discard(key)
    except Exception:
        return CapturedVariable(
            name=name,
            type=_type_name(value),
            value=f"<unserializable {_type_name(value)}>",
            is_truncated=True,
        )


def serialize(
    value: Any,
    max_depth: int,
    max_string_length: int,
    max_collection_size: int,
    *,
    name: str = "",
) -> CapturedVariable:
    """Convert an arbitrary value into a bounded CapturedVariable tree.

    Never raises. Depth 0 is the value itself; values at exactly max_depth
    are summarized but not descended into.
    """
    walk = _Walk(
        max_depth=max_depth,
        max_string_length=max_string_length,
        max_collection_size=max_collection_size,
    )
    return _capture(name, value, 0, walk)


def serialize_variables(
    variables: Mapping[str, Any], cfg: AgentConfig
) -> dict[str, CapturedVariable]:
    """Serialize a name -> value mapping using the config's limits."""
    return {
        str(name): serialize(
            value,
            cfg.max_capture_depth,
            cfg.max_string_length,
            cfg.max_collection_size,
            name=str(name),
        )
        for name, value in variables.items()
    }
