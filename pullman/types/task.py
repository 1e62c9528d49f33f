"""External task type.

An external task is a unit of work fetched from the coordinator and locked
to this worker until its lock expires. The lock is owned by the coordinator;
locally we only know its expiry timestamp.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Self

from pullman.exception import VariableNotFoundError
from pullman.types.value import ObjectValue, TypedValue

if TYPE_CHECKING:
    from pullman.serialisers.registry import DataFormatRegistry


@dataclass(frozen=True)
class ExternalTask:
    """A locked external task, and the variables fetched with it."""

    id: str
    topic_name: str
    worker_id: str | None = None
    lock_expiration_time: datetime | None = None

    process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    activity_id: str | None = None
    activity_instance_id: str | None = None
    execution_id: str | None = None
    business_key: str | None = None
    tenant_id: str | None = None

    # None until the task has failed at least once
    retries: int | None = None
    priority: int = 0
    error_message: str | None = None

    variables: Mapping[str, TypedValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Variables
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def get_variable(self, name: str) -> Any:
        """Get a variable's value, decoding object values on first access.

        @param name: The variable name
        @return: The materialised value
        @raises VariableNotFoundError: If there's no such variable
        @raises UnknownFormatError: If an object value's data format isn't registered
        @raises DeserializationError: If an object value can't be decoded
        """

        return self._typed(name).value

    def get_variable_typed(self, name: str, deserialize: bool = True) -> TypedValue:
        """Get a variable as a typed value.

        @param name: The variable name
        @param deserialize: Decode object values. If False, object values come back as a
            serialized-only view (raw payload and metadata), and nothing is decoded.
        @return: The typed value
        """

        typed = self._typed(name)

        if isinstance(typed, ObjectValue):
            if not deserialize:
                return typed.serialized_view()

            _ = typed.value  # decode and cache

        return typed

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def all_variables(self) -> dict[str, Any]:
        """All variable values, decoding any object values."""

        return {name: typed.value for name, typed in self.variables.items()}

    def all_variables_typed(self, deserialize: bool = True) -> dict[str, TypedValue]:
        """All variables as typed values; see `get_variable_typed`."""

        return {name: self.get_variable_typed(name, deserialize) for name in self.variables}

    def _typed(self, name: str) -> TypedValue:
        try:
            return self.variables[name]
        except KeyError:
            raise VariableNotFoundError(name) from None

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Lock
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def lock_expired(self, now: datetime | None = None) -> bool:
        """Has the lock expired, as far as we know locally?"""

        if self.lock_expiration_time is None:
            return False

        now = now or datetime.now(tz=UTC)
        return now >= self.lock_expiration_time

    def seconds_until_lock_expiry(self) -> float | None:
        if self.lock_expiration_time is None:
            return None

        return (self.lock_expiration_time - datetime.now(tz=UTC)).total_seconds()

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Wire
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    @classmethod
    def load(cls, data: Mapping[str, Any], registry: "DataFormatRegistry") -> Self:
        """Build a task from a fetch-and-lock response record.

        @param data: One record of the response
        @param registry: The registry object variables will decode through
        @return: The task
        """

        from pullman.variables import load_variables, parse_date

        return cls(
            id=data["id"],
            topic_name=data["topicName"],
            worker_id=data.get("workerId"),
            lock_expiration_time=parse_date(data.get("lockExpirationTime")),
            process_instance_id=data.get("processInstanceId"),
            process_definition_id=data.get("processDefinitionId"),
            process_definition_key=data.get("processDefinitionKey"),
            activity_id=data.get("activityId"),
            activity_instance_id=data.get("activityInstanceId"),
            execution_id=data.get("executionId"),
            business_key=data.get("businessKey"),
            tenant_id=data.get("tenantId"),
            retries=data.get("retries"),
            priority=data.get("priority") or 0,
            error_message=data.get("errorMessage"),
            variables=load_variables(data.get("variables"), registry),
        )
