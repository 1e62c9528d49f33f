"""DataFormat abstract type.

A data format is a named codec for object variables. Formats are registered
by name with a serialisation registry, and picked by the
`serializationDataFormat` carried by each object value. Resolution is always
by name, never by inspecting the payload.
"""

from abc import ABC, abstractmethod
from typing import Any


class DataFormat(ABC):
    """Encode and decode object variables of one serialisation format."""

    # The format name, as carried in `serializationDataFormat`
    name: str

    @abstractmethod
    def can_serialize(self, value: Any) -> bool:
        """Can this format encode the given object?"""

        raise NotImplementedError

    @abstractmethod
    def type_name_for(self, value: Any) -> str:
        """The logical object type name to record alongside the encoded value.

        @param value: The object to be encoded
        @return: The object type name
        @raises NotInScopeError: If the object's class is unknown to the format
        """

        raise NotImplementedError

    @abstractmethod
    def serialize(self, value: Any, object_type_name: str) -> str:
        """Encode an object to its textual form.

        @param value: The object to encode
        @param object_type_name: The type name the object is recorded under
        @return: The serialised payload
        """

        raise NotImplementedError

    @abstractmethod
    def deserialize(self, serialized: str, object_type_name: str | None) -> Any:
        """Decode a serialised payload.

        Formats should let the underlying parse or conversion errors propagate;
        the registry wraps them in a DeserializationError.

        @param serialized: The raw payload
        @param object_type_name: The type to decode into
        @return: The decoded object
        """

        raise NotImplementedError
