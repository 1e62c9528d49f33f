"""JSON data format.

Dataclasses serialise to JSON objects keyed by field name (or the field's
`metadata={"name": ...}`), list containers to JSON arrays. Plain dicts and
lists are supported too, under the type names `dict` and `list`. Decoded
fields are type-checked against the dataclass annotations.
"""

from datetime import datetime
import json
from typing import Any, get_args, get_origin

from typeguard import check_type

from pullman.constants import JSON_DATAFORMAT_NAME
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

BUILTIN_TYPES: dict[str, type] = {"dict": dict, "list": list}


class JsonDataFormat(DataFormat):
    """Encode dataclasses, list containers, dicts and lists as JSON."""

    name = JSON_DATAFORMAT_NAME

    def __init__(self, scope: Scope) -> None:
        self.scope = scope

    def can_serialize(self, value: Any) -> bool:
        if type(value) in (dict, list):
            return True
        return is_object_class(type(value)) and self.scope.has_type(type(value))

    def type_name_for(self, value: Any) -> str:
        if type(value) is dict:
            return "dict"
        if type(value) is list:
            return "list"
        return self.scope.type_name_for(value)

    def serialize(self, value: Any, object_type_name: str) -> str:
        return json.dumps(_to_jsonable(value), ensure_ascii=False)

    def deserialize(self, serialized: str, object_type_name: str | None) -> Any:
        data = json.loads(serialized)

        if object_type_name is None:
            return data

        if object_type_name in BUILTIN_TYPES:
            return check_type(data, BUILTIN_TYPES[object_type_name])

        cls = self.scope.get_type(object_type_name)
        return _from_jsonable(data, cls)


def _to_jsonable(value: Any) -> Any:
    if is_list_container(type(value)) or isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]

    if is_object_class(type(value)):
        return {
            field_name(data_field): _to_jsonable(getattr(value, data_field.name))
            for data_field, _annotation in object_fields(type(value))
        }

    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}

    if isinstance(value, datetime):
        return value.isoformat()

    return value


def _from_jsonable(data: Any, annotation: Any) -> Any:
    annotation, optional = unwrap_optional(annotation)

    if data is None and optional:
        return None

    if is_list_container(annotation):
        check_type(data, list)
        return annotation(_from_jsonable(item, annotation.item_type) for item in data)

    if is_object_class(annotation):
        check_type(data, dict)
        kwargs: dict[str, Any] = {}

        for data_field, field_annotation in object_fields(annotation):
            name = field_name(data_field)
            if name not in data:
                if has_default(data_field):
                    continue
                raise ValueError(f"Missing key '{name}' for {annotation.__name__}")

            kwargs[data_field.name] = _from_jsonable(data[name], field_annotation)

        return annotation(**kwargs)

    item_type = list_item_type(annotation)
    if item_type is not None:
        check_type(data, list)
        return [_from_jsonable(item, item_type) for item in data]

    if get_origin(annotation) is dict:
        check_type(data, dict)
        args = get_args(annotation)
        value_type = args[1] if len(args) == 2 else Any
        return {key: _from_jsonable(item, value_type) for key, item in data.items()}

    if annotation is datetime:
        return datetime.fromisoformat(check_type(data, str))

    if annotation is float and isinstance(data, int) and not isinstance(data, bool):
        return float(data)

    return check_type(data, annotation)
