"""The per-task reporting API handed to handlers.

Handlers usually just return (or raise) and let the executor report the
outcome. A handler that wants control, e.g. to extend its lock during a
long computation, or to report before doing some cleanup, can use the
service directly; the executor then makes no report of its own.
"""

from collections.abc import Mapping
from threading import Lock
from typing import Any

from pullman.config import ClientConfig
from pullman.exception import TaskAlreadyReportedError, TransportError
from pullman.serialisers.registry import DataFormatRegistry
from pullman.types.coordinator import BpmnErrorReport, Coordinator, FailureReport
from pullman.types.task import ExternalTask
from pullman.utils.logging_config import get_logger
from pullman.variables import save_variables

log = get_logger(__name__)


class TaskService:
    """Report the outcome of one external task to the coordinator.

    Every report method raises LockExpiredError if the coordinator no longer
    considers this worker the lock holder, and TransportError if the report
    could not be delivered. Only one outcome can be reported per task.
    """

    def __init__(
        self,
        task: ExternalTask,
        coordinator: Coordinator,
        registry: DataFormatRegistry,
        config: ClientConfig,
    ) -> None:
        self.task = task
        self._coordinator = coordinator
        self._registry = registry
        self._config = config
        self._reported = False
        self._lock = Lock()

    @property
    def reported(self) -> bool:
        """Has an outcome been reported for the task?"""

        return self._reported

    @property
    def worker_id(self) -> str:
        return self._config.worker_id

    def complete(
        self,
        variables: Mapping[str, Any] | None = None,
        local_variables: Mapping[str, Any] | None = None,
    ) -> None:
        """Complete the task.

        @param variables: Process variables to set. Plain Python values are typed
            automatically; objects are encoded through the serialisation registry
        @param local_variables: Variables to set in the task's local scope
        @raises SerializationError: If a variable can't be encoded. Nothing is reported in that case
        """

        encoded = self._encode(variables)
        encoded_local = self._encode(local_variables)

        self._report(
            "complete",
            lambda: self._coordinator.complete(self.task.id, self.worker_id, encoded, encoded_local),
        )

    def handle_failure(
        self,
        error_message: str,
        error_details: str | None = None,
        retries: int = 0,
        retry_timeout: int = 0,
    ) -> None:
        """Report a technical failure.

        @param error_message: A short description of the failure
        @param error_details: Longer diagnostics, e.g. a traceback
        @param retries: Retries left. At 0 the coordinator raises an incident
        @param retry_timeout: Milliseconds before the task can be fetched again
        """

        failure = FailureReport(
            error_message=error_message,
            error_details=error_details,
            retries=max(0, retries),
            retry_timeout=max(0, retry_timeout),
        )

        self._report(
            "failure",
            lambda: self._coordinator.handle_failure(self.task.id, self.worker_id, failure),
        )

    def handle_bpmn_error(
        self,
        error_code: str,
        error_message: str | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> None:
        """Report a business error, to be caught by an error boundary event in the process."""

        error = BpmnErrorReport(
            error_code=error_code,
            error_message=error_message,
            variables=self._encode(variables),
        )

        self._report(
            "bpmn error",
            lambda: self._coordinator.handle_bpmn_error(self.task.id, self.worker_id, error),
        )

    def extend_lock(self, new_duration: int) -> None:
        """Extend the task's lock to `new_duration` milliseconds from now."""

        if new_duration <= 0:
            raise ValueError("new_duration must be positive")

        self._coordinator.extend_lock(self.task.id, self.worker_id, new_duration)
        log.debug("Extended lock on task '%s' by %dms", self.task.id, new_duration)

    def unlock(self) -> None:
        """Give the task back, so any worker can fetch it again. Counts as the task's outcome."""

        self._report("unlock", lambda: self._coordinator.unlock(self.task.id))

    def _encode(self, variables: Mapping[str, Any] | None) -> dict[str, Any]:
        return save_variables(
            variables,
            self._registry,
            default_format=self._config.default_serialization_format,
            fetched=self.task.variables,
            reuse_fetched_format=self._config.reuse_fetched_format,
        )

    def _report(self, label: str, send) -> None:
        with self._lock:
            if self._reported:
                raise TaskAlreadyReportedError(f"An outcome was already reported for task '{self.task.id}'")

            self._reported = True

        try:
            send()
        except TransportError:
            # undelivered, so the caller may try again; a LockExpiredError is final
            with self._lock:
                self._reported = False
            raise

        log.debug("Reported %s for task '%s' (topic '%s')", label, self.task.id, self.task.topic_name)
