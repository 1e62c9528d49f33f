"""Typed variable values.

Variables fetched with an external task are either primitives (strings,
numbers, dates...) or serialised objects. Object values keep their raw
serialised form and are only decoded when the handler asks for the value;
the decoded value is then cached on the instance.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol, TypedDict

from pullman.exception import DeserializationError


class ValueType(StrEnum):
    """Variable types, named as the coordinator names them on the wire."""

    STRING = "String"
    BOOLEAN = "Boolean"
    INTEGER = "Integer"
    SHORT = "Short"
    LONG = "Long"
    DOUBLE = "Double"
    DATE = "Date"
    BYTES = "Bytes"
    FILE = "File"
    NULL = "Null"
    JSON = "Json"
    XML = "Xml"
    OBJECT = "Object"

    @classmethod
    def from_wire(cls, name: str | None) -> "ValueType":
        """Resolve a wire type name case-insensitively; a missing name means Null."""

        if not name:
            return cls.NULL

        for member in cls:
            if member.value.lower() == name.lower():
                return member

        raise ValueError(f"Unknown variable type '{name}'")


class SerialisedVariable(TypedDict, total=False):
    """The wire form of a single variable."""

    type: str
    value: Any
    valueInfo: dict[str, Any]


class DecodeState(StrEnum):
    """Where an ObjectValue is in its lazy-decoding lifecycle."""

    RAW = "raw"
    DECODING = "decoding"
    DECODED = "decoded"


class ObjectDecoder(Protocol):
    """Anything that can turn a serialised ObjectValue into a Python object."""

    def decode(self, value: "ObjectValue") -> Any: ...


class TypedValue(ABC):
    """A variable value together with its type information."""

    type: ValueType
    transient: bool

    @property
    @abstractmethod
    def value(self) -> Any:
        """The Python value of this variable."""

        raise NotImplementedError


@dataclass(frozen=True)
class PrimitiveValue(TypedValue):
    """A primitive variable; the value is already materialised."""

    type: ValueType
    # The Python value; named `raw` so the `value` property stays read-only
    raw: Any
    transient: bool = False

    @property
    def value(self) -> Any:
        return self.raw


class ObjectValue(TypedValue):
    """A serialised object variable.

    Carries the raw payload plus the object type name and the data format
    name needed to decode it. Decoding is lazy: the first access of `value`
    decodes and caches; later accesses return the same instance. Reading
    `serialized_value` never decodes.
    """

    type = ValueType.OBJECT

    def __init__(
        self,
        serialized_value: str | None,
        object_type_name: str | None,
        serialization_data_format: str | None,
        transient: bool = False,
        decoder: ObjectDecoder | None = None,
    ) -> None:
        self.serialized_value = serialized_value
        self.object_type_name = object_type_name
        self.serialization_data_format = serialization_data_format
        self.transient = transient

        self._decoder = decoder
        self._state = DecodeState.RAW
        self._cached: Any = None
        self._lock = Lock()

    @classmethod
    def decoded(
        cls,
        value: Any,
        serialized_value: str,
        object_type_name: str,
        serialization_data_format: str,
        transient: bool = False,
        decoder: ObjectDecoder | None = None,
    ) -> "ObjectValue":
        """Create an ObjectValue that already holds its materialised value,
        e.g. one produced by encoding a Python object."""

        object_value = cls(
            serialized_value=serialized_value,
            object_type_name=object_type_name,
            serialization_data_format=serialization_data_format,
            transient=transient,
            decoder=decoder,
        )
        object_value._cached = value
        object_value._state = DecodeState.DECODED
        return object_value

    @property
    def state(self) -> DecodeState:
        return self._state

    @property
    def deserialized(self) -> bool:
        """True once the value has been decoded and cached."""

        return self._state == DecodeState.DECODED

    @property
    def value(self) -> Any:
        """Decode the serialised payload (once) and return the cached object.

        @raises UnknownFormatError: If the data format isn't registered
        @raises DeserializationError: If the payload can't be decoded. The raw form is left untouched,
            so a later access retries the decode.
        """

        if self._state == DecodeState.DECODED:
            return self._cached

        with self._lock:
            # another thread may have finished decoding while we waited
            if self._state == DecodeState.DECODED:
                return self._cached

            if self.serialized_value is None:
                self._cached = None
                self._state = DecodeState.DECODED
                return None

            if self._decoder is None:
                raise RuntimeError(
                    f"ObjectValue of type '{self.object_type_name}' has no decoder attached; "
                    "it was not produced by a serialisation registry"
                )

            self._state = DecodeState.DECODING
            try:
                decoded = self._decoder.decode(self)
            except BaseException:
                self._state = DecodeState.RAW
                raise

            self._cached = decoded
            self._state = DecodeState.DECODED
            return decoded

    def serialized_view(self) -> "ObjectValue":
        """A detached copy holding only the raw payload and metadata.

        The copy is never decoded, whatever the state of this instance, and
        decoding the copy later does not touch this instance.
        """

        return ObjectValue(
            serialized_value=self.serialized_value,
            object_type_name=self.object_type_name,
            serialization_data_format=self.serialization_data_format,
            transient=self.transient,
            decoder=self._decoder,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ObjectValue):
            return NotImplemented

        return (
            self.serialized_value == other.serialized_value
            and self.object_type_name == other.object_type_name
            and self.serialization_data_format == other.serialization_data_format
            and self.transient == other.transient
        )

    def __hash__(self) -> int:
        return hash((self.serialized_value, self.object_type_name, self.serialization_data_format, self.transient))

    def __repr__(self) -> str:
        return (
            f"ObjectValue(object_type_name={self.object_type_name!r}, "
            f"serialization_data_format={self.serialization_data_format!r}, "
            f"state={self._state.value!r})"
        )


class UnreadableValue(TypedValue):
    """A fetched variable that couldn't be read: its type is unknown, or its
    value doesn't parse as that type.

    The task still loads; reading the value raises DeserializationError.
    Written back, it emits its wire form unchanged.
    """

    type: ValueType | None  # type: ignore[assignment]

    def __init__(self, wire: Mapping[str, Any], reason: str) -> None:
        self.wire: dict[str, Any] = dict(wire)
        self.type_name: str | None = wire.get("type")
        self.reason = reason

        # None when the wire type isn't one we know
        self.type = next((member for member in ValueType if member.value.lower() == str(self.type_name).lower()), None)

        value_info = wire.get("valueInfo")
        self.transient = isinstance(value_info, Mapping) and bool(value_info.get("transient", False))

    @property
    def value(self) -> Any:
        raise DeserializationError(f"Could not read variable of type '{self.type_name}': {self.reason}")

    def __repr__(self) -> str:
        return f"UnreadableValue(type_name={self.type_name!r}, reason={self.reason!r})"
