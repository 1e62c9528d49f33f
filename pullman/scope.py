from typing import Any, Self

from pullman.exception import NotInScopeError
from pullman.types.scope import Scope


class LocalScope(Scope):
    """A local translation layer between object type names and
    their underlying Python classes."""

    def __init__(self, types: list[type] | None = None) -> None:
        self.types: dict[str, type] = {}
        self.names: dict[type, str] = {}

        self.add_types(types or [])

    def add_type(self, cls: type, type_name: str | None = None) -> Self:
        """Add a class to the scope.

        @param cls: The class to add.
        @param type_name: The name to register it under. Defaults to the class's `__type_name__`
            attribute if it has one, else its `__name__`.
        """

        name = type_name or getattr(cls, "__type_name__", None) or cls.__name__

        self.types[name] = cls
        self.names[cls] = name
        return self

    def add_types(self, classes: list[type]) -> Self:
        """Add multiple classes to the scope.

        @param classes: The classes to add.
        """

        for cls in classes:
            self.add_type(cls)
        return self

    def get_type(self, type_name: str) -> type:
        """Get a class from the scope by name.

        @param type_name: The name of the class to get.
        """

        if type_name not in self.types:
            raise NotInScopeError(f"Object type '{type_name}' not found in scope. Did you register it?")

        return self.types[type_name]

    def type_name_for(self, value: Any) -> str:
        """Get the name an object's class is registered under.

        @param value: The object.
        """

        cls = type(value)
        if cls not in self.names:
            raise NotInScopeError(f"Class '{cls.__qualname__}' not found in scope. Did you register it?")

        return self.names[cls]

    def has_type(self, cls: type) -> bool:
        return cls in self.names
