"""Scope abstract type.

Object variables travel with a logical type name. Data formats need to turn
that name back into a Python class when decoding, and a class back into a
name when encoding.
"""

from abc import ABC, abstractmethod
from typing import Any, Self


class Scope(ABC):
    """Maps object type names to Python classes, and back.

    Classes are explicitly registered with a scope rather than discovered by
    import-time decorators. Explicit > implicit.
    """

    @abstractmethod
    def add_type(self, cls: type, type_name: str | None = None) -> Self:
        """Register a class, optionally under an explicit type name."""
        ...

    @abstractmethod
    def add_types(self, classes: list[type]) -> Self:
        """Register multiple classes under their default type names."""
        ...

    @abstractmethod
    def get_type(self, type_name: str) -> type:
        """Get a class by its type name."""
        ...

    @abstractmethod
    def type_name_for(self, value: Any) -> str:
        """Get the type name an object's class is registered under."""
        ...

    @abstractmethod
    def has_type(self, cls: type) -> bool:
        """Is this class registered?"""
        ...
