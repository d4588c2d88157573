"""Dynamic values for untyped tool-call inputs.

Tool arguments arrive as JSON whose keys are only known at runtime.
:func:`parse_tool_input` decodes them into a closed set of
:class:`DynamicValue` variants so consumers can branch on the variant
instead of inspecting arbitrary Python objects.  ``to_python()`` turns a
value back into plain JSON-compatible data for the tool backend.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

from conduit.errors import ValueParseError


class DynamicValue:
    """Base for all dynamic value variants."""

    def to_python(self) -> Any:
        raise NotImplementedError

    def as_string(self) -> str | None:
        return None

    def as_int(self) -> int | None:
        return None

    def as_float(self) -> float | None:
        return None

    def as_bool(self) -> bool | None:
        return None


@dataclass(frozen=True)
class StringValue(DynamicValue):
    value: str

    def to_python(self) -> str:
        return self.value

    def as_string(self) -> str | None:
        return self.value


@dataclass(frozen=True)
class IntValue(DynamicValue):
    value: int

    def to_python(self) -> int:
        return self.value

    def as_int(self) -> int | None:
        return self.value

    def as_float(self) -> float | None:
        return float(self.value)


@dataclass(frozen=True)
class FloatValue(DynamicValue):
    value: float

    def to_python(self) -> float:
        return self.value

    def as_float(self) -> float | None:
        return self.value


@dataclass(frozen=True)
class BoolValue(DynamicValue):
    value: bool

    def to_python(self) -> bool:
        return self.value

    def as_bool(self) -> bool | None:
        return self.value


@dataclass(frozen=True)
class NullValue(DynamicValue):
    def to_python(self) -> None:
        return None


@dataclass(frozen=True)
class ListValue(DynamicValue):
    items: tuple[DynamicValue, ...] = ()

    def to_python(self) -> list[Any]:
        return [item.to_python() for item in self.items]

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> DynamicValue:
        return self.items[index]


@dataclass(frozen=True)
class ObjectValue(DynamicValue):
    """Mapping of string keys to values; key order is preserved."""

    fields: tuple[tuple[str, DynamicValue], ...] = field(default=())

    def to_python(self) -> dict[str, Any]:
        return {key: value.to_python() for key, value in self.fields}

    def get(self, key: str) -> DynamicValue | None:
        for name, value in self.fields:
            if name == key:
                return value
        return None

    def as_dict(self) -> dict[str, DynamicValue]:
        return dict(self.fields)

    def __len__(self) -> int:
        return len(self.fields)


def from_python(obj: Any) -> DynamicValue:
    """Build a :class:`DynamicValue` from decoded JSON data.

    Raises:
        TypeError: If *obj* holds something JSON cannot represent.
    """
    if obj is None:
        return NullValue()
    # bool is a subclass of int, so it has to be checked first
    if isinstance(obj, bool):
        return BoolValue(obj)
    if isinstance(obj, int):
        return IntValue(obj)
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise TypeError(f"non-finite float {obj!r} is not valid JSON")
        return FloatValue(obj)
    if isinstance(obj, str):
        return StringValue(obj)
    if isinstance(obj, (list, tuple)):
        return ListValue(tuple(from_python(item) for item in obj))
    if isinstance(obj, dict):
        return ObjectValue(tuple(
            (str(key), from_python(value)) for key, value in obj.items()
        ))
    raise TypeError(f"unsupported type for DynamicValue: {type(obj).__name__}")


def _reject_constant(name: str):
    raise ValueError(f"invalid JSON constant {name}")


def _decode(buffer: str | bytes) -> Any:
    if isinstance(buffer, (bytes, bytearray)):
        try:
            buffer = buffer.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValueParseError(f"JSON parsing error: {e}") from e
    if not buffer.strip():
        raise ValueParseError("empty input")
    try:
        return json.loads(buffer, parse_constant=_reject_constant)
    except (json.JSONDecodeError, ValueError) as e:
        raise ValueParseError(f"JSON parsing error: {e}") from e


def parse_value(buffer: str | bytes) -> DynamicValue:
    """Parse any JSON document into a :class:`DynamicValue`.

    Raises:
        ValueParseError: On empty or malformed input.
    """
    return from_python(_decode(buffer))


def parse_tool_input(buffer: str | bytes) -> dict[str, DynamicValue]:
    """Parse a tool-call argument buffer, which must be a JSON object.

    Raises:
        ValueParseError: On empty or malformed input, or when the
            document is not an object.
    """
    decoded = _decode(buffer)
    if not isinstance(decoded, dict):
        raise ValueParseError(
            f"JSON parsing error: expected an object, got {type(decoded).__name__}"
        )
    return {str(key): from_python(value) for key, value in decoded.items()}


def to_call_arguments(tool_input: dict[str, DynamicValue]) -> dict[str, Any]:
    """Convert parsed tool input into the mapping a backend call expects."""
    return {key: value.to_python() for key, value in tool_input.items()}
