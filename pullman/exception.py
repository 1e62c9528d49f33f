"""Exceptions used throughout Pullman."""

from collections.abc import Mapping
from typing import Any


class PullmanError(Exception):
    """Base exception for Pullman-related errors."""


class DuplicateSubscriptionError(PullmanError):
    """A subscription to this topic is already active."""

    def __init__(self, topic_name: str) -> None:
        super().__init__(f"Topic '{topic_name}' already has an active subscription")
        self.topic_name = topic_name


class SubscriptionClosedError(PullmanError):
    """The subscription has been closed and cannot be used."""


class TransportError(PullmanError):
    """A request to the coordinator failed (network error, timeout or unexpected status)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LockExpiredError(PullmanError):
    """The coordinator rejected a report because this worker no longer holds the task's lock."""

    def __init__(self, task_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Lock on external task '{task_id}' is no longer held by this worker")
        self.task_id = task_id


class DuplicateFormatError(PullmanError):
    """A data format with this name is already registered."""


class UnknownFormatError(PullmanError):
    """No data format with this name is registered."""

    def __init__(self, format_name: str) -> None:
        super().__init__(f"No data format registered for '{format_name}'")
        self.format_name = format_name


class DeserializationError(PullmanError):
    """A serialised object value could not be decoded.

    The original error is available as `__cause__`.
    """

    def __init__(self, message: str, object_type_name: str | None = None, format_name: str | None = None) -> None:
        super().__init__(message)
        self.object_type_name = object_type_name
        self.format_name = format_name


class SerializationError(PullmanError):
    """A value could not be encoded for transmission to the coordinator."""


class NotInScopeError(PullmanError):
    """A class was not found in the current scope."""


class VariableNotFoundError(PullmanError, KeyError):
    """The task carries no variable with this name."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Variable '{self.name}' not found on external task"


class TaskAlreadyReportedError(PullmanError):
    """An outcome has already been reported for this task."""


class HandlerError(PullmanError):
    """A topic handler raised an uncaught exception. The original error is `__cause__`."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class BpmnError(PullmanError):
    """Raised by a handler to signal a business fault, reported to the coordinator
    as a BPMN error rather than a technical failure."""

    def __init__(
        self,
        error_code: str,
        error_message: str | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(error_message or error_code)
        self.error_code = error_code
        self.error_message = error_message
        self.variables = dict(variables) if variables else {}
