"""An in-process coordinator.

It keeps external tasks in memory and enforces the same lock rules as a
real coordinator: a task is fetched by at most one worker at a time, and
reports are rejected once the reporting worker's lock has expired. Useful
for running workers without a coordinator, and for tests.
"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from threading import Condition, Lock
import time
from typing import Any

from pullman.exception import LockExpiredError, PullmanError, TransportError
from pullman.types.coordinator import BpmnErrorReport, Coordinator, FailureReport, FetchAndLockRequest, FetchTopic
from pullman.types.value import SerialisedVariable
from pullman.utils.id_generator import generate_id
from pullman.utils.logging_config import get_logger
from pullman.variables import format_date

log = get_logger(__name__)


class TaskState(StrEnum):
    """The coordinator-side state of an external task."""

    # Waiting to be fetched, or its lock expired
    AVAILABLE = "available"
    LOCKED = "locked"
    COMPLETED = "completed"
    # A BPMN error was reported
    BPMN_ERROR = "bpmn_error"
    # Failed with no retries left
    INCIDENT = "incident"


@dataclass
class MemoryTask:
    """An external task as the coordinator stores it."""

    id: str
    topic_name: str
    variables: dict[str, SerialisedVariable] = field(default_factory=dict)

    process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    activity_id: str | None = None
    activity_instance_id: str | None = None
    execution_id: str | None = None
    business_key: str | None = None
    tenant_id: str | None = None
    priority: int = 0

    state: TaskState = TaskState.AVAILABLE
    worker_id: str | None = None
    lock_expiration_time: datetime | None = None

    # Set by failure reports
    retries: int | None = None
    error_message: str | None = None
    error_details: str | None = None
    # Not fetchable before this time
    retry_after: datetime | None = None

    # Set by completion and BPMN error reports
    local_variables: dict[str, SerialisedVariable] = field(default_factory=dict)
    error_code: str | None = None

    def is_locked(self, now: datetime) -> bool:
        return (
            self.state is TaskState.LOCKED
            and self.lock_expiration_time is not None
            and now < self.lock_expiration_time
        )

    def is_fetchable(self, now: datetime) -> bool:
        if self.state is TaskState.LOCKED:
            return not self.is_locked(now)

        if self.state is not TaskState.AVAILABLE:
            return False

        return self.retry_after is None or now >= self.retry_after

    def matches(self, topic: FetchTopic) -> bool:
        if topic.topic_name != self.topic_name:
            return False
        if topic.business_key is not None and topic.business_key != self.business_key:
            return False
        if topic.process_definition_key is not None and topic.process_definition_key != self.process_definition_key:
            return False
        if topic.tenant_ids is not None and self.tenant_id not in topic.tenant_ids:
            return False
        return True

    def save(self, topic: FetchTopic) -> dict[str, Any]:
        """The fetch-and-lock response record for this task."""

        if topic.variables is None:
            variables = dict(self.variables)
        else:
            variables = {name: self.variables[name] for name in topic.variables if name in self.variables}

        return {
            "id": self.id,
            "topicName": self.topic_name,
            "workerId": self.worker_id,
            "lockExpirationTime": format_date(self.lock_expiration_time) if self.lock_expiration_time else None,
            "processInstanceId": self.process_instance_id,
            "processDefinitionId": self.process_definition_id,
            "processDefinitionKey": self.process_definition_key,
            "activityId": self.activity_id,
            "activityInstanceId": self.activity_instance_id,
            "executionId": self.execution_id,
            "businessKey": self.business_key,
            "tenantId": self.tenant_id,
            "retries": self.retries,
            "priority": self.priority,
            "errorMessage": self.error_message,
            "variables": variables,
        }


@dataclass(frozen=True)
class Report:
    """A report received by the coordinator, accepted or not."""

    action: str
    task_id: str
    worker_id: str | None
    payload: Any = None
    accepted: bool = True


class MemoryCoordinator(Coordinator):
    """Thread-safe in-memory coordinator.

    Time comes from `datetime.now(UTC)`, so lock expiry can be driven with
    freezegun in tests.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, MemoryTask] = {}
        self.fetch_requests: list[FetchAndLockRequest] = []
        self.reports: list[Report] = []

        self._lock = Lock()
        self._changed = Condition(self._lock)
        self._fetch_errors: list[PullmanError] = []

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Setup and inspection
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def add_task(
        self,
        topic_name: str,
        variables: Mapping[str, SerialisedVariable] | None = None,
        task_id: str | None = None,
        **attributes: Any,
    ) -> str:
        """Create a task, fetchable immediately.

        @param topic_name: The task's topic
        @param variables: Wire-form variables, e.g. from `save_variables`
        @param task_id: The task's ID. Generated if not given
        @param attributes: Other MemoryTask fields, e.g. business_key or priority
        @return: The task ID
        """

        task_id = task_id or generate_id()
        task = MemoryTask(id=task_id, topic_name=topic_name, variables=dict(variables or {}), **attributes)

        with self._changed:
            if task_id in self.tasks:
                raise ValueError(f"Task '{task_id}' already exists")

            self.tasks[task_id] = task
            self._changed.notify_all()

        return task_id

    def get(self, task_id: str) -> MemoryTask:
        with self._lock:
            return self.tasks[task_id]

    def tasks_in(self, state: TaskState) -> list[MemoryTask]:
        with self._lock:
            return [task for task in self.tasks.values() if task.state is state]

    def fail_next_fetches(self, count: int, error: PullmanError | None = None) -> None:
        """Make the next `count` fetches raise `error` (a TransportError by default)."""

        with self._lock:
            for _ in range(count):
                self._fetch_errors.append(error or TransportError("Coordinator unavailable"))

    def expire_lock(self, task_id: str) -> None:
        """Expire a task's lock now, as if its lock duration had passed."""

        with self._changed:
            task = self.tasks[task_id]
            if task.state is TaskState.LOCKED:
                task.lock_expiration_time = _now()
            self._changed.notify_all()

    def wait_until(self, predicate: Callable[["MemoryCoordinator"], bool], timeout: float = 5.0) -> bool:
        """Block until `predicate(self)` holds, re-checking after every change.

        @return: True if the predicate held before the timeout
        """

        deadline = time.monotonic() + timeout

        while not predicate(self):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False

            # a change can land between the check and the wait, so don't wait long
            with self._changed:
                self._changed.wait(min(remaining, 0.05))

        return True

    def wait_for_state(self, task_id: str, state: TaskState, timeout: float = 5.0) -> bool:
        return self.wait_until(lambda coordinator: coordinator.get(task_id).state is state, timeout)

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Coordinator
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def fetch_and_lock(self, request: FetchAndLockRequest) -> Sequence[Mapping[str, Any]]:
        timeout = (request.async_response_timeout or 0) / 1000
        deadline = time.monotonic() + timeout

        with self._changed:
            self.fetch_requests.append(request)
            self._changed.notify_all()

            if self._fetch_errors:
                raise self._fetch_errors.pop(0)

            while True:
                records = self._lock_tasks(request)
                if records:
                    return records

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []

                self._changed.wait(remaining)

    def complete(
        self,
        task_id: str,
        worker_id: str,
        variables: Mapping[str, SerialisedVariable] | None = None,
        local_variables: Mapping[str, SerialisedVariable] | None = None,
    ) -> None:
        with self._changed:
            task = self._locked_by(task_id, worker_id, "complete", variables)

            task.variables.update(variables or {})
            task.local_variables.update(local_variables or {})
            task.state = TaskState.COMPLETED
            self._accept("complete", task, worker_id, variables)

    def handle_failure(self, task_id: str, worker_id: str, failure: FailureReport) -> None:
        with self._changed:
            task = self._locked_by(task_id, worker_id, "failure", failure)

            task.retries = failure.retries
            task.error_message = failure.error_message
            task.error_details = failure.error_details

            if failure.retries <= 0:
                task.state = TaskState.INCIDENT
            else:
                task.state = TaskState.AVAILABLE
                task.retry_after = _now() + timedelta(milliseconds=failure.retry_timeout)

            self._accept("failure", task, worker_id, failure)

    def handle_bpmn_error(self, task_id: str, worker_id: str, error: BpmnErrorReport) -> None:
        with self._changed:
            task = self._locked_by(task_id, worker_id, "bpmnError", error)

            task.error_code = error.error_code
            task.error_message = error.error_message
            task.variables.update(error.variables)
            task.state = TaskState.BPMN_ERROR
            self._accept("bpmnError", task, worker_id, error)

    def extend_lock(self, task_id: str, worker_id: str, new_duration: int) -> None:
        with self._changed:
            task = self._locked_by(task_id, worker_id, "extendLock", new_duration)

            task.lock_expiration_time = _now() + timedelta(milliseconds=new_duration)
            self.reports.append(Report("extendLock", task_id, worker_id, new_duration))
            self._changed.notify_all()

    def unlock(self, task_id: str) -> None:
        with self._changed:
            task = self.tasks.get(task_id)
            if task is None:
                self.reports.append(Report("unlock", task_id, None, accepted=False))
                raise LockExpiredError(task_id, f"External task '{task_id}' does not exist")

            if task.state is TaskState.LOCKED:
                task.state = TaskState.AVAILABLE
            task.worker_id = None
            task.lock_expiration_time = None

            self.reports.append(Report("unlock", task_id, None))
            self._changed.notify_all()

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Internals; callers hold self._lock
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def _lock_tasks(self, request: FetchAndLockRequest) -> list[dict[str, Any]]:
        now = _now()
        candidates: list[tuple[MemoryTask, FetchTopic]] = []

        for task in self.tasks.values():
            if not task.is_fetchable(now):
                continue

            for topic in request.topics:
                if task.matches(topic):
                    candidates.append((task, topic))
                    break

        if request.use_priority:
            # sorted() is stable, so equal priorities keep creation order
            candidates = sorted(candidates, key=lambda candidate: -candidate[0].priority)

        records = []
        for task, topic in candidates[: request.max_tasks]:
            task.state = TaskState.LOCKED
            task.worker_id = request.worker_id
            task.lock_expiration_time = now + timedelta(milliseconds=topic.lock_duration)
            records.append(task.save(topic))

        if records:
            log.debug("Locked %d task(s) for worker '%s'", len(records), request.worker_id)

        return records

    def _locked_by(self, task_id: str, worker_id: str, action: str, payload: Any) -> MemoryTask:
        task = self.tasks.get(task_id)

        if task is None:
            self.reports.append(Report(action, task_id, worker_id, payload, accepted=False))
            raise LockExpiredError(task_id, f"External task '{task_id}' does not exist")

        if task.worker_id != worker_id or not task.is_locked(_now()):
            self.reports.append(Report(action, task_id, worker_id, payload, accepted=False))
            raise LockExpiredError(task_id)

        return task

    def _accept(self, action: str, task: MemoryTask, worker_id: str, payload: Any) -> None:
        task.worker_id = None
        task.lock_expiration_time = None
        self.reports.append(Report(action, task.id, worker_id, payload))
        self._changed.notify_all()


def _now() -> datetime:
    return datetime.now(tz=UTC)
