"""Handler outcomes and task results.

A handler tells the executor how a task went by what it returns (or
raises). The executor turns that into a report to the coordinator, and
delivers a TaskResult to the subscription's result callback.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pullman.types.task import ExternalTask
    from pullman.worker.service import TaskService


@dataclass(frozen=True)
class Complete:
    """Complete the task, optionally setting process and local variables."""

    variables: Mapping[str, Any] = field(default_factory=dict)
    local_variables: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Failure:
    """Report a technical failure without raising.

    Unset hints fall back to the subscription's retry settings.
    """

    error_message: str
    error_details: str | None = None
    retries: int | None = None
    retry_timeout: int | None = None


type Outcome = Complete | Failure | Mapping[str, Any] | None

type Handler = Callable[["ExternalTask", "TaskService"], Outcome]


class OutcomeKind(StrEnum):
    """What was reported for a task."""

    COMPLETED = "completed"
    FAILED = "failed"
    BPMN_ERROR = "bpmn_error"
    # The handler reported through its TaskService, so nothing more was sent
    REPORTED_BY_HANDLER = "reported_by_handler"
    # The coordinator rejected the report; the lock was lost
    LOCK_EXPIRED = "lock_expired"
    # The report could not be delivered
    REPORT_FAILED = "report_failed"


@dataclass(frozen=True)
class TaskResult:
    """The result of executing one task, delivered to `on_result` callbacks."""

    task_id: str
    topic_name: str
    kind: OutcomeKind
    # The handler's error (wrapped in HandlerError), the BpmnError, or the reporting error
    error: BaseException | None = None
    duration_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.COMPLETED, OutcomeKind.REPORTED_BY_HANDLER)


type ResultCallback = Callable[[TaskResult], None]
