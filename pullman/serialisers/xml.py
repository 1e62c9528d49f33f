"""XML data format.

Dataclasses serialise to an element named after the class (lower camel
case, or `__xml_name__`), with one child element per field. List fields
repeat the field's element; list containers hold one element per item.

    <sample>
      <stringProperty>a String</stringProperty>
      <intProperty>42</intProperty>
      <booleanProperty>true</booleanProperty>
    </sample>
"""

from datetime import datetime
from typing import Any
from xml.etree import ElementTree

from pullman.constants import XML_DATAFORMAT_NAME
from pullman.serialisers.fields import (
    field_name,
    has_default,
    is_list_container,
    is_object_class,
    list_item_type,
    object_fields,
    unwrap_optional,
)
from pullman.types.dataformat import DataFormat
from pullman.types.scope import Scope


def element_name(cls: type) -> str:
    """The element name instances of a class serialise under."""

    explicit = getattr(cls, "__xml_name__", None)
    if explicit:
        return explicit

    name = cls.__name__
    return name[:1].lower() + name[1:]


class XmlDataFormat(DataFormat):
    """Encode dataclasses and list containers as XML documents."""

    name = XML_DATAFORMAT_NAME

    def __init__(self, scope: Scope) -> None:
        self.scope = scope

    def can_serialize(self, value: Any) -> bool:
        return is_object_class(type(value)) and self.scope.has_type(type(value))

    def type_name_for(self, value: Any) -> str:
        return self.scope.type_name_for(value)

    def serialize(self, value: Any, object_type_name: str) -> str:
        root = self._encode_object(element_name(type(value)), value)
        return ElementTree.tostring(root, encoding="unicode")

    def deserialize(self, serialized: str, object_type_name: str | None) -> Any:
        if not object_type_name:
            raise ValueError("XML values need an object type name to deserialize into")

        cls = self.scope.get_type(object_type_name)
        root = ElementTree.fromstring(serialized)

        expected = element_name(cls)
        if root.tag != expected:
            raise ValueError(f"Expected root element <{expected}> for type '{object_type_name}', found <{root.tag}>")

        return self._decode_object(root, cls)

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Encoding
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def _encode_object(self, tag: str, value: Any) -> ElementTree.Element:
        element = ElementTree.Element(tag)

        if is_list_container(type(value)):
            for item in value:
                element.append(self._encode_value(self._item_tag(type(value)), item))
            return element

        for data_field, _annotation in object_fields(type(value)):
            field_value = getattr(value, data_field.name)
            name = field_name(data_field)

            if field_value is None:
                continue

            if isinstance(field_value, list):
                for item in field_value:
                    element.append(self._encode_value(name, item))
            else:
                element.append(self._encode_value(name, field_value))

        return element

    def _encode_value(self, tag: str, value: Any) -> ElementTree.Element:
        if is_object_class(type(value)):
            return self._encode_object(tag, value)

        element = ElementTree.Element(tag)
        element.text = _to_text(value)
        return element

    def _item_tag(self, container: type) -> str:
        item_type = container.item_type  # type: ignore[attr-defined]
        return element_name(item_type) if is_object_class(item_type) else "item"

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Decoding
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def _decode_object(self, element: ElementTree.Element, cls: type) -> Any:
        if is_list_container(cls):
            item_type = cls.item_type  # type: ignore[attr-defined]
            return cls(self._decode_value(child, item_type) for child in element)

        kwargs: dict[str, Any] = {}

        for data_field, annotation in object_fields(cls):
            name = field_name(data_field)
            annotation, optional = unwrap_optional(annotation)

            item_type = list_item_type(annotation)
            if item_type is not None:
                kwargs[data_field.name] = [self._decode_value(child, item_type) for child in element.findall(name)]
                continue

            child = element.find(name)
            if child is None:
                if has_default(data_field):
                    continue
                if optional:
                    kwargs[data_field.name] = None
                    continue
                raise ValueError(f"Missing element <{name}> in <{element.tag}>")

            kwargs[data_field.name] = self._decode_value(child, annotation)

        return cls(**kwargs)

    def _decode_value(self, element: ElementTree.Element, annotation: Any) -> Any:
        annotation, _ = unwrap_optional(annotation)

        if is_object_class(annotation):
            return self._decode_object(element, annotation)

        return _from_text(element.text or "", annotation)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _from_text(text: str, annotation: Any) -> Any:
    if annotation is str or annotation is Any:
        return text
    if annotation is bool:
        lowered = text.strip().lower()
        if lowered not in ("true", "false"):
            raise ValueError(f"Invalid boolean value {text!r}")
        return lowered == "true"
    if annotation is int:
        return int(text.strip())
    if annotation is float:
        return float(text.strip())
    if annotation is datetime:
        return datetime.fromisoformat(text.strip())

    raise TypeError(f"Unsupported field type {annotation!r}")
