"""The serialisation registry.

Maps data format names to DataFormat implementations, and converts object
variables between their serialised and materialised forms. Object values
fetched with a task hold a reference to the registry and call back into
`decode` the first time their value is read.
"""

from threading import Lock
from typing import Any

from pullman.constants import JSON_DATAFORMAT_NAME, XML_DATAFORMAT_NAME
from pullman.exception import (
    DeserializationError,
    DuplicateFormatError,
    SerializationError,
    UnknownFormatError,
)
from pullman.types.dataformat import DataFormat
from pullman.types.scope import Scope
from pullman.types.value import ObjectValue
from pullman.utils.logging_config import get_logger

log = get_logger(__name__)


class DataFormatRegistry:
    """Thread-safe registry of data formats, keyed by format name."""

    def __init__(self) -> None:
        self._formats: dict[str, DataFormat] = {}
        self._lock = Lock()

    def register(self, format_name: str, data_format: DataFormat) -> None:
        """Register a data format.

        @param format_name: The name object values refer to the format by
        @param data_format: The format implementation
        @raises DuplicateFormatError: If a format is already registered under this name
        """

        with self._lock:
            if format_name in self._formats:
                raise DuplicateFormatError(f"Data format '{format_name}' is already registered")

            self._formats[format_name] = data_format

        log.debug("Registered data format '%s' (%s)", format_name, type(data_format).__name__)

    def get(self, format_name: str | None) -> DataFormat:
        """Look up a data format by name.

        @raises UnknownFormatError: If no format is registered under this name
        """

        with self._lock:
            data_format = self._formats.get(format_name) if format_name else None

        if data_format is None:
            raise UnknownFormatError(str(format_name))

        return data_format

    def formats(self) -> list[str]:
        """The registered format names, in registration order."""

        with self._lock:
            return list(self._formats)

    def __contains__(self, format_name: object) -> bool:
        with self._lock:
            return format_name in self._formats

    def find_format_for(self, value: Any) -> str | None:
        """The name of the first registered format able to encode the value, if any."""

        with self._lock:
            candidates = list(self._formats.items())

        for format_name, data_format in candidates:
            if data_format.can_serialize(value):
                return format_name

        return None

    def decode(self, value: ObjectValue) -> Any:
        """Decode an object value's serialised payload.

        This doesn't cache anything or change the object value; ObjectValue.value
        calls this and does the caching.

        @param value: The object value to decode
        @return: The materialised object
        @raises UnknownFormatError: If the value's data format isn't registered
        @raises DeserializationError: If the format fails to decode the payload or resolve its type
        """

        data_format = self.get(value.serialization_data_format)

        try:
            return data_format.deserialize(value.serialized_value or "", value.object_type_name)
        except Exception as err:
            raise DeserializationError(
                f"Could not deserialize object of type '{value.object_type_name}' "
                f"with data format '{value.serialization_data_format}': {err}",
                object_type_name=value.object_type_name,
                format_name=value.serialization_data_format,
            ) from err

    def encode(self, value: Any, format_name: str, transient: bool = False) -> ObjectValue:
        """Encode a Python object as an object value.

        @param value: The object to encode
        @param format_name: The data format to encode with
        @param transient: Whether the variable should be transient
        @return: An ObjectValue holding both the serialised payload and the original object
        @raises UnknownFormatError: If the data format isn't registered
        @raises SerializationError: If the format cannot encode the object
        """

        data_format = self.get(format_name)

        if not data_format.can_serialize(value):
            raise SerializationError(
                f"Data format '{format_name}' cannot serialize objects of type '{type(value).__qualname__}'"
            )

        try:
            object_type_name = data_format.type_name_for(value)
            serialized = data_format.serialize(value, object_type_name)
        except Exception as err:
            raise SerializationError(
                f"Could not serialize object of type '{type(value).__qualname__}' with data format '{format_name}': {err}"
            ) from err

        return ObjectValue.decoded(
            value,
            serialized_value=serialized,
            object_type_name=object_type_name,
            serialization_data_format=format_name,
            transient=transient,
            decoder=self,
        )


def default_registry(scope: Scope) -> DataFormatRegistry:
    """A registry with the XML and JSON formats registered under their standard names.

    @param scope: The scope both formats resolve object type names through
    @return: The registry
    """

    from pullman.serialisers.json import JsonDataFormat
    from pullman.serialisers.xml import XmlDataFormat

    registry = DataFormatRegistry()
    registry.register(XML_DATAFORMAT_NAME, XmlDataFormat(scope))
    registry.register(JSON_DATAFORMAT_NAME, JsonDataFormat(scope))
    return registry
