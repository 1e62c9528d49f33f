"""Conversion between the coordinator's wire variables and typed values.

On the wire each variable is `{"type": ..., "value": ..., "valueInfo": {...}}`.
Object variables carry `objectTypeName` and `serializationDataFormat` in
their valueInfo, and a string payload as their value.
"""

import base64
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from pullman.constants import INTEGER_MAX, INTEGER_MIN
from pullman.exception import SerializationError
from pullman.types.value import ObjectValue, PrimitiveValue, SerialisedVariable, TypedValue, UnreadableValue, ValueType

if TYPE_CHECKING:
    from pullman.serialisers.registry import DataFormatRegistry


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Dates
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


def parse_date(text: str | None) -> datetime | None:
    """Parse a coordinator timestamp, e.g. `2025-01-01T12:00:00.000+0100`.

    Timestamps without an offset are taken to be UTC.
    """

    if text is None:
        return None

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_date(value: datetime) -> str:
    """Format a datetime the way the coordinator expects, with millisecond precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)

    millis = value.microsecond // 1000
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{millis:03d}" + value.strftime("%z")


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Loading
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


def load_variable(data: Mapping[str, Any], registry: "DataFormatRegistry") -> TypedValue:
    """Convert one wire variable to a typed value. Object payloads are not decoded here.

    A variable of an unknown type, or whose value doesn't parse as its type,
    loads as an UnreadableValue; the error surfaces when the handler reads it.

    @param data: The wire variable
    @param registry: The registry object values will decode through
    @return: A PrimitiveValue, a (raw) ObjectValue, or an UnreadableValue
    """

    if not isinstance(data, Mapping):
        return UnreadableValue({"value": data}, "not a variable entry")

    try:
        return _load_variable(data, registry)
    except (AttributeError, TypeError, ValueError) as err:
        return UnreadableValue(data, str(err))


def _load_variable(data: Mapping[str, Any], registry: "DataFormatRegistry") -> TypedValue:
    value_type = ValueType.from_wire(data.get("type"))
    raw = data.get("value")
    value_info = data.get("valueInfo") or {}
    transient = bool(value_info.get("transient", False))

    if value_type == ValueType.OBJECT:
        return ObjectValue(
            serialized_value=raw,
            object_type_name=value_info.get("objectTypeName"),
            serialization_data_format=value_info.get("serializationDataFormat"),
            transient=transient,
            decoder=registry,
        )

    if raw is None:
        return PrimitiveValue(value_type, None, transient)

    match value_type:
        case ValueType.DATE:
            return PrimitiveValue(value_type, parse_date(raw), transient)
        case ValueType.BYTES:
            return PrimitiveValue(value_type, base64.b64decode(raw), transient)
        case ValueType.INTEGER | ValueType.SHORT | ValueType.LONG:
            return PrimitiveValue(value_type, int(raw), transient)
        case ValueType.DOUBLE:
            return PrimitiveValue(value_type, float(raw), transient)
        case ValueType.BOOLEAN:
            return PrimitiveValue(value_type, _parse_bool(raw), transient)
        case _:
            return PrimitiveValue(value_type, raw, transient)


def load_variables(data: Mapping[str, Mapping[str, Any]] | None, registry: "DataFormatRegistry") -> dict[str, TypedValue]:
    """Convert a wire variable map to typed values."""

    if not data:
        return {}

    return {name: load_variable(variable, registry) for name, variable in data.items()}


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() == "true"
    return bool(raw)


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Saving
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


def infer_value(
    value: Any,
    registry: "DataFormatRegistry",
    format_name: str,
) -> TypedValue:
    """Wrap a plain Python value handed back by a handler in a typed value.

    @param value: The Python value
    @param registry: Used to encode objects that aren't primitives
    @param format_name: The data format for object values
    @return: The typed value
    """

    if isinstance(value, TypedValue):
        return value

    # bool is an int subclass, so it must be checked first
    if value is None:
        return PrimitiveValue(ValueType.NULL, None)
    if isinstance(value, bool):
        return PrimitiveValue(ValueType.BOOLEAN, value)
    if isinstance(value, int):
        if INTEGER_MIN <= value <= INTEGER_MAX:
            return PrimitiveValue(ValueType.INTEGER, value)
        return PrimitiveValue(ValueType.LONG, value)
    if isinstance(value, float):
        return PrimitiveValue(ValueType.DOUBLE, value)
    if isinstance(value, str):
        return PrimitiveValue(ValueType.STRING, value)
    if isinstance(value, (bytes, bytearray)):
        return PrimitiveValue(ValueType.BYTES, bytes(value))
    if isinstance(value, datetime):
        return PrimitiveValue(ValueType.DATE, value)
    if isinstance(value, date):
        return PrimitiveValue(ValueType.DATE, datetime(value.year, value.month, value.day, tzinfo=UTC))

    return registry.encode(value, format_name)


def save_variable(value: TypedValue) -> SerialisedVariable:
    """Convert a typed value to its wire form.

    Object values are emitted with their serialised payload unchanged, so a
    fetched object written back is byte-identical.
    """

    if isinstance(value, UnreadableValue):
        return dict(value.wire)  # type: ignore[return-value]

    if isinstance(value, ObjectValue):
        value_info: dict[str, Any] = {
            "objectTypeName": value.object_type_name,
            "serializationDataFormat": value.serialization_data_format,
        }
        if value.transient:
            value_info["transient"] = True

        return {"type": ValueType.OBJECT.value, "value": value.serialized_value, "valueInfo": value_info}

    raw = value.value
    wire_value: Any

    match value.type:
        case ValueType.DATE:
            wire_value = format_date(raw) if raw is not None else None
        case ValueType.BYTES:
            wire_value = base64.b64encode(raw).decode("ascii") if raw is not None else None
        case _:
            wire_value = raw

    serialised: SerialisedVariable = {"type": value.type.value, "value": wire_value}
    if value.transient:
        serialised["valueInfo"] = {"transient": True}
    else:
        serialised["valueInfo"] = {}

    return serialised


def save_variables(
    variables: Mapping[str, Any] | None,
    registry: "DataFormatRegistry",
    default_format: str,
    fetched: Mapping[str, TypedValue] | None = None,
    reuse_fetched_format: bool = True,
) -> dict[str, SerialisedVariable]:
    """Encode handler output variables for a report.

    @param variables: Output variables; plain Python values or typed values
    @param registry: Encodes object values
    @param default_format: The data format for objects with no better choice
    @param fetched: The task's fetched variables, used to pick the format of a re-written object
    @param reuse_fetched_format: Re-encode an object in the format it was fetched with
    @return: The wire variable map
    @raises SerializationError: If a value cannot be encoded
    """

    if not variables:
        return {}

    fetched = fetched or {}
    saved: dict[str, SerialisedVariable] = {}

    for name, value in variables.items():
        format_name = default_format

        previous = fetched.get(name)
        if reuse_fetched_format and isinstance(previous, ObjectValue) and previous.serialization_data_format:
            format_name = previous.serialization_data_format

        try:
            typed = infer_value(value, registry, format_name)
        except SerializationError:
            raise
        except Exception as err:
            raise SerializationError(f"Could not encode variable '{name}': {err}") from err

        saved[name] = save_variable(typed)

    return saved
