"""Execute locked tasks on a bounded thread pool.

Admission is checked against two limits: a global cap on running handlers,
and a per-topic cap from the subscription's `max_tasks`. A task that can't
be admitted is refused rather than queued, so the fetch loop never holds
locks on tasks that are waiting for a free worker.
"""

from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Condition, Lock
import time
import traceback

from pullman.config import ClientConfig
from pullman.exception import (
    BpmnError,
    HandlerError,
    LockExpiredError,
    SerializationError,
    TransportError,
)
from pullman.serialisers.registry import DataFormatRegistry
from pullman.subscriptions import TopicSubscription
from pullman.types.coordinator import Coordinator
from pullman.types.outcome import Complete, Failure, Outcome, OutcomeKind, TaskResult
from pullman.types.task import ExternalTask
from pullman.utils.logging_config import get_logger
from pullman.worker.limits import ConcurrencyLimit
from pullman.worker.service import TaskService

log = get_logger(__name__)


class TaskHandlerExecutor:
    """Runs topic handlers against locked tasks, and reports their outcomes.

    The executor is the only writer of a task's in-flight status: a task ID
    is never dispatched while a previous dispatch of it is still running.
    """

    def __init__(self, coordinator: Coordinator, registry: DataFormatRegistry, config: ClientConfig) -> None:
        self.coordinator = coordinator
        self.registry = registry
        self.config = config

        max_workers = config.max_workers or config.max_tasks
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pullman-handler")
        self._global_limit = ConcurrencyLimit(max_workers)
        self._topic_limits: dict[str, ConcurrencyLimit] = {}
        self._in_flight: dict[str, Future] = {}

        self._lock = Lock()
        self._capacity_changed = Condition(self._lock)
        self._shutdown = False

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Admission
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def available(self) -> int:
        """Free worker slots, across all topics."""

        with self._lock:
            if self._shutdown:
                return 0
            return self._global_limit.available()

    def capacity(self, subscription: TopicSubscription) -> int:
        """How many more tasks of this subscription's topic could be admitted right now."""

        with self._lock:
            if self._shutdown:
                return 0

            free = self._global_limit.available()
            topic_limit = self._topic_limit(subscription)
            if topic_limit is not None:
                free = min(free, topic_limit.available())

            return free

    def wait_for_capacity(self, timeout: float | None = None) -> bool:
        """Block until a worker slot is free, the executor shuts down, or the timeout passes.

        @return: True if a slot is free
        """

        with self._capacity_changed:
            self._capacity_changed.wait_for(
                lambda: self._shutdown or self._global_limit.available() > 0,
                timeout=timeout,
            )
            return not self._shutdown and self._global_limit.available() > 0

    def submit(self, task: ExternalTask, subscription: TopicSubscription) -> bool:
        """Dispatch a task to its subscription's handler.

        @param task: The locked task
        @param subscription: The subscription the task was fetched for
        @return: True if the task was admitted; False if the executor is saturated for the
            topic, shut down, or the task is already in flight
        """

        with self._lock:
            if self._shutdown:
                return False

            if task.id in self._in_flight:
                log.warning("Task '%s' is already in flight; not dispatching it again", task.id)
                return False

            topic_limit = self._topic_limit(subscription)
            if topic_limit is not None and not topic_limit.try_claim():
                return False

            if not self._global_limit.try_claim():
                if topic_limit is not None:
                    topic_limit.free()
                return False

            try:
                future = self._pool.submit(self._execute, task, subscription)
            except RuntimeError:
                # the pool was shut down underneath us
                self._global_limit.free()
                if topic_limit is not None:
                    topic_limit.free()
                return False

            self._in_flight[task.id] = future

        future.add_done_callback(lambda _future: self._release(task, topic_limit))
        return True

    def in_flight(self) -> set[str]:
        """IDs of tasks whose handlers are running or queued to run."""

        with self._lock:
            return set(self._in_flight)

    def is_in_flight(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._in_flight

    def _topic_limit(self, subscription: TopicSubscription) -> ConcurrencyLimit | None:
        # callers hold self._lock
        if subscription.max_tasks is None:
            return None

        limit = self._topic_limits.get(subscription.topic_name)
        if limit is None:
            limit = ConcurrencyLimit(subscription.max_tasks)
            self._topic_limits[subscription.topic_name] = limit
        elif limit.limit != subscription.max_tasks:
            # resubscribed with a different limit
            limit.limit = subscription.max_tasks

        return limit

    def _release(self, task: ExternalTask, topic_limit: ConcurrencyLimit | None) -> None:
        # frees the limit claimed at admission, even if the topic was resubscribed since
        with self._capacity_changed:
            self._in_flight.pop(task.id, None)
            self._global_limit.free()

            if topic_limit is not None:
                topic_limit.free()

            self._capacity_changed.notify_all()

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Execution
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def _execute(self, task: ExternalTask, subscription: TopicSubscription) -> TaskResult:
        """Run the handler, report its outcome, and deliver the result. Never raises."""

        started = time.monotonic()
        service = TaskService(task, self.coordinator, self.registry, self.config)

        try:
            kind, error = self._run_handler(task, subscription, service)
        except Exception as err:
            log.exception("Unexpected error executing task '%s'", task.id)
            kind, error = OutcomeKind.REPORT_FAILED, err

        result = TaskResult(
            task_id=task.id,
            topic_name=task.topic_name,
            kind=kind,
            error=error,
            duration_seconds=time.monotonic() - started,
        )

        self._deliver(result, subscription)
        return result

    def _run_handler(
        self,
        task: ExternalTask,
        subscription: TopicSubscription,
        service: TaskService,
    ) -> tuple[OutcomeKind, BaseException | None]:
        try:
            outcome = subscription.handler(task, service)

        except (LockExpiredError, TransportError) as err:
            # raised by a report the handler made through its service
            return self._reporting_error(task, err)

        except BpmnError as err:
            if service.reported:
                return OutcomeKind.REPORTED_BY_HANDLER, err

            return self._report(
                lambda: service.handle_bpmn_error(err.error_code, err.error_message, err.variables),
                task,
                OutcomeKind.BPMN_ERROR,
                err,
            )

        except Exception as err:
            handler_error = HandlerError(task.id, f"{type(err).__name__}: {err}")
            handler_error.__cause__ = err

            if service.reported:
                log.warning("Handler for task '%s' raised after reporting: %s", task.id, err)
                return OutcomeKind.REPORTED_BY_HANDLER, handler_error

            log.warning("Handler for task '%s' (topic '%s') failed: %s", task.id, task.topic_name, err)
            details = "".join(traceback.format_exception(type(err), err, err.__traceback__))

            return self._report(
                lambda: service.handle_failure(
                    str(handler_error),
                    details,
                    retries=self._retries(task, subscription, None),
                    retry_timeout=self._retry_timeout(subscription, None),
                ),
                task,
                OutcomeKind.FAILED,
                handler_error,
            )

        if service.reported:
            if outcome is not None:
                log.debug("Ignoring outcome of task '%s'; the handler already reported", task.id)
            return OutcomeKind.REPORTED_BY_HANDLER, None

        return self._report_outcome(task, subscription, service, outcome)

    def _report_outcome(
        self,
        task: ExternalTask,
        subscription: TopicSubscription,
        service: TaskService,
        outcome: Outcome,
    ) -> tuple[OutcomeKind, BaseException | None]:
        if isinstance(outcome, Failure):
            return self._report(
                lambda: service.handle_failure(
                    outcome.error_message,
                    outcome.error_details,
                    retries=self._retries(task, subscription, outcome.retries),
                    retry_timeout=self._retry_timeout(subscription, outcome.retry_timeout),
                ),
                task,
                OutcomeKind.FAILED,
                None,
            )

        if isinstance(outcome, Complete):
            variables, local_variables = outcome.variables, outcome.local_variables
        elif outcome is None or isinstance(outcome, Mapping):
            variables, local_variables = outcome, None
        else:
            variables, local_variables = None, None
            log.warning(
                "Handler for topic '%s' returned an unsupported %s; completing task '%s' without variables",
                task.topic_name,
                type(outcome).__name__,
                task.id,
            )

        try:
            return self._report(
                lambda: service.complete(variables, local_variables),
                task,
                OutcomeKind.COMPLETED,
                None,
            )
        except SerializationError as err:
            log.warning("Could not encode output variables of task '%s': %s", task.id, err)
            return self._report(
                lambda: service.handle_failure(
                    str(err),
                    retries=self._retries(task, subscription, None),
                    retry_timeout=self._retry_timeout(subscription, None),
                ),
                task,
                OutcomeKind.FAILED,
                err,
            )

    def _report(self, send, task: ExternalTask, kind: OutcomeKind, error: BaseException | None):
        try:
            send()
        except (LockExpiredError, TransportError) as err:
            return self._reporting_error(task, err)

        return kind, error

    def _reporting_error(self, task: ExternalTask, err: BaseException) -> tuple[OutcomeKind, BaseException]:
        if isinstance(err, LockExpiredError):
            log.warning("Lock on task '%s' expired before its outcome was reported; discarding it", task.id)
            return OutcomeKind.LOCK_EXPIRED, err

        log.warning("Could not report outcome of task '%s': %s", task.id, err)
        return OutcomeKind.REPORT_FAILED, err

    def _retries(self, task: ExternalTask, subscription: TopicSubscription, requested: int | None) -> int:
        if requested is not None:
            return requested

        # the coordinator only sets retries once a task has failed
        if task.retries is not None:
            return max(0, task.retries - 1)

        if subscription.retries is not None:
            return subscription.retries

        return self.config.default_retries

    def _retry_timeout(self, subscription: TopicSubscription, requested: int | None) -> int:
        if requested is not None:
            return requested
        if subscription.retry_timeout is not None:
            return subscription.retry_timeout
        return self.config.default_retry_timeout

    def _deliver(self, result: TaskResult, subscription: TopicSubscription) -> None:
        if subscription.on_result is None:
            return

        try:
            subscription.on_result(result)
        except Exception:
            log.exception("Result callback for topic '%s' raised", subscription.topic_name)

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # Shutdown
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def shutdown(self, drain: bool = True, timeout: float | None = None) -> bool:
        """Stop admitting tasks, and either drain or abandon in-flight ones.

        @param drain: Wait for running handlers to finish. If False, queued handlers are
            cancelled and running ones are left to finish in the background
        @param timeout: Seconds to wait when draining. None waits indefinitely
        @return: True if no handler is still running
        """

        with self._capacity_changed:
            self._shutdown = True
            futures = list(self._in_flight.values())
            self._capacity_changed.notify_all()

        if drain:
            _done, not_done = wait(futures, timeout=timeout)
            if not_done:
                log.warning("%d task handler(s) still running after %ss", len(not_done), timeout)
            self._pool.shutdown(wait=False)
            return not not_done

        self._pool.shutdown(wait=False, cancel_futures=True)
        return all(future.done() for future in futures)
