"""Coordinator abstract type.

The coordinator owns external tasks and their locks. Workers talk to it
through this interface: fetch-and-lock batches of tasks, then report each
task's outcome. Implementations speak the wire format, so requests and
responses here are plain mappings of wire data.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from pullman.types.value import SerialisedVariable


@dataclass(frozen=True)
class FetchTopic:
    """One topic of a fetch-and-lock request."""

    topic_name: str
    # Milliseconds the coordinator should lock fetched tasks for
    lock_duration: int
    # Variables to fetch. None fetches all of them
    variables: tuple[str, ...] | None = None
    local_variables: bool = False
    business_key: str | None = None
    process_definition_key: str | None = None
    tenant_ids: tuple[str, ...] | None = None

    def save(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "topicName": self.topic_name,
            "lockDuration": self.lock_duration,
            "variables": list(self.variables) if self.variables is not None else None,
            "localVariables": self.local_variables,
        }

        if self.business_key is not None:
            data["businessKey"] = self.business_key
        if self.process_definition_key is not None:
            data["processDefinitionKey"] = self.process_definition_key
        if self.tenant_ids is not None:
            data["tenantIdIn"] = list(self.tenant_ids)

        return data


@dataclass(frozen=True)
class FetchAndLockRequest:
    """A request to fetch and lock up to `max_tasks` tasks across several topics."""

    worker_id: str
    max_tasks: int
    topics: tuple[FetchTopic, ...]
    use_priority: bool = True
    # Long-poll timeout in milliseconds
    async_response_timeout: int | None = None

    def save(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "workerId": self.worker_id,
            "maxTasks": self.max_tasks,
            "usePriority": self.use_priority,
            "topics": [topic.save() for topic in self.topics],
        }

        if self.async_response_timeout is not None:
            data["asyncResponseTimeout"] = self.async_response_timeout

        return data

    def topic(self, topic_name: str) -> FetchTopic | None:
        for topic in self.topics:
            if topic.topic_name == topic_name:
                return topic
        return None


@dataclass(frozen=True)
class FailureReport:
    """Hints sent with a failure report."""

    error_message: str
    error_details: str | None = None
    # Remaining retries; the coordinator raises an incident at 0
    retries: int = 0
    # Milliseconds before the task may be fetched again
    retry_timeout: int = 0


@dataclass(frozen=True)
class BpmnErrorReport:
    error_code: str
    error_message: str | None = None
    variables: Mapping[str, SerialisedVariable] = field(default_factory=dict)


class Coordinator(ABC):
    """The transport to the coordinator that owns tasks and their locks.

    Report methods raise LockExpiredError when the coordinator rejects the
    report because the task is no longer locked by this worker, and
    TransportError for any other failure.
    """

    @abstractmethod
    def fetch_and_lock(self, request: FetchAndLockRequest) -> Sequence[Mapping[str, Any]]:
        """Fetch and lock tasks, blocking up to the request's long-poll timeout.

        @param request: The topics to fetch from and how many tasks to lock
        @return: The locked task records, in the coordinator's order. Possibly empty.
        @raises TransportError: If the request failed
        """

        raise NotImplementedError

    @abstractmethod
    def complete(
        self,
        task_id: str,
        worker_id: str,
        variables: Mapping[str, SerialisedVariable] | None = None,
        local_variables: Mapping[str, SerialisedVariable] | None = None,
    ) -> None:
        """Report that a task completed."""

        raise NotImplementedError

    @abstractmethod
    def handle_failure(self, task_id: str, worker_id: str, failure: FailureReport) -> None:
        """Report that a task failed."""

        raise NotImplementedError

    @abstractmethod
    def handle_bpmn_error(self, task_id: str, worker_id: str, error: BpmnErrorReport) -> None:
        """Report a business error for a task."""

        raise NotImplementedError

    @abstractmethod
    def extend_lock(self, task_id: str, worker_id: str, new_duration: int) -> None:
        """Extend a task's lock to `new_duration` milliseconds from now."""

        raise NotImplementedError

    @abstractmethod
    def unlock(self, task_id: str) -> None:
        """Release a task's lock so that any worker can fetch it again."""

        raise NotImplementedError

    def close(self) -> None:
        """Release any transport resources."""

        return None
