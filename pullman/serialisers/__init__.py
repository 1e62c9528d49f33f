from pullman.serialisers.json import JsonDataFormat
from pullman.serialisers.registry import DataFormatRegistry, default_registry
from pullman.serialisers.xml import XmlDataFormat

__all__ = [
    "DataFormatRegistry",
    "JsonDataFormat",
    "XmlDataFormat",
    "default_registry",
]
