"""Helpers shared by the object data formats.

Objects carried as variables are dataclasses, or list containers: `list`
subclasses declaring an `item_type`, which serialise as a single object.

    @dataclass
    class Sample:
        string_property: str = field(metadata={"name": "stringProperty"})

    class Samples(list):
        item_type = Sample
"""

from dataclasses import MISSING, Field, fields, is_dataclass
import types
from typing import Any, Union, get_args, get_origin, get_type_hints


def is_list_container(cls: type) -> bool:
    """Is this a list subclass that declares the type of its items?"""

    return isinstance(cls, type) and issubclass(cls, list) and hasattr(cls, "item_type")


def is_object_class(cls: Any) -> bool:
    """Can the object formats encode instances of this class?"""

    return isinstance(cls, type) and (is_dataclass(cls) or is_list_container(cls))


def field_name(data_field: Field) -> str:
    """The serialised name of a dataclass field; `metadata={"name": ...}` overrides the attribute name."""

    return data_field.metadata.get("name", data_field.name)


def object_fields(cls: type) -> list[tuple[Field, Any]]:
    """A dataclass's init fields, each paired with its resolved type annotation."""

    hints = get_type_hints(cls)
    return [(data_field, hints[data_field.name]) for data_field in fields(cls) if data_field.init]


def has_default(data_field: Field) -> bool:
    return data_field.default is not MISSING or data_field.default_factory is not MISSING


def unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Strip `None` from a union annotation.

    @return: The remaining annotation, and whether None was allowed
    @raises TypeError: For unions of more than one non-None type
    """

    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) != 1:
            raise TypeError(f"Unsupported union field type {annotation!r}")
        return args[0], True

    return annotation, False


def list_item_type(annotation: Any) -> Any | None:
    """The item type of a `list[T]` annotation, or None if it isn't one."""

    if get_origin(annotation) is list:
        args = get_args(annotation)
        return args[0] if args else Any

    return None
