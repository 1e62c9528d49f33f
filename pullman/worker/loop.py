"""The fetch-and-lock loop polls the coordinator for tasks on every subscribed
topic, and hands each one to the executor. It runs on one background thread.

Each cycle only asks for as many tasks as the executor could start right
now, and leaves saturated topics out of the request, so tasks are never
locked only to wait for a free worker."""

from collections.abc import Mapping, Sequence
from enum import StrEnum
from threading import Event, Lock, Thread
from typing import Any

from pullman.config import ClientConfig
from pullman.constants import CAPACITY_WAIT_SECONDS
from pullman.exception import PullmanError, TransportError
from pullman.serialisers.registry import DataFormatRegistry
from pullman.subscriptions import SubscriptionSnapshot, TopicSubscription, TopicSubscriptionRegistry
from pullman.types.coordinator import Coordinator, FailureReport, FetchAndLockRequest
from pullman.types.task import ExternalTask
from pullman.utils.logging_config import configure_logging, get_logger
from pullman.worker.backoff import ExponentialBackoff
from pullman.worker.executor import TaskHandlerExecutor

configure_logging()
log = get_logger(__name__)


class LoopState(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class FetchAndLockLoop:
    """Poll the coordinator for tasks, and dispatch them to the executor."""

    def __init__(
        self,
        subscriptions: TopicSubscriptionRegistry,
        executor: TaskHandlerExecutor,
        coordinator: Coordinator,
        data_formats: DataFormatRegistry,
        config: ClientConfig,
    ) -> None:
        self.subscriptions = subscriptions
        self.executor = executor
        self.coordinator = coordinator
        self.data_formats = data_formats
        self.config = config

        self.backoff = ExponentialBackoff(
            initial=config.backoff_initial,
            maximum=config.backoff_max,
            factor=config.backoff_factor,
            jitter=config.backoff_jitter,
        )

        self._stop = Event()
        self._lock = Lock()
        self._thread: Thread | None = None
        self._state = LoopState.STOPPED

    @property
    def state(self) -> LoopState:
        return self._state

    def start(self) -> None:
        """Start polling on a background thread. Does nothing if already running."""

        with self._lock:
            if self._state is not LoopState.STOPPED:
                return

            self._stop.clear()
            self._state = LoopState.RUNNING
            self._thread = Thread(target=self._run, name="pullman-fetch-loop", daemon=True)
            self._thread.start()

        log.info("Fetch loop started for worker '%s'", self.config.worker_id)

    def stop(self) -> None:
        """Ask the loop to stop after its current fetch. Doesn't wait; see `join`."""

        with self._lock:
            if self._state is LoopState.RUNNING:
                self._state = LoopState.STOPPING
            self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread to exit.

        @return: True if the loop has stopped
        """

        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return False

        return True

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    dispatched = self.poll_once()
                except TransportError as err:
                    self._back_off(err)
                    continue
                except Exception as err:
                    log.exception("Unexpected error in fetch loop")
                    self._back_off(err)
                    continue

                self.backoff.reset()

                if dispatched == 0 and self.config.poll_interval > 0:
                    self._stop.wait(self.config.poll_interval)
        finally:
            with self._lock:
                self._state = LoopState.STOPPED
            log.info("Fetch loop stopped for worker '%s'", self.config.worker_id)

    def _back_off(self, err: Exception) -> None:
        delay = self.backoff.next_delay()
        log.warning("Fetch failed (%s); retrying in %.2fs", err, delay)
        self._stop.wait(delay)

    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
    # One poll cycle
    # ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

    def poll_once(self) -> int | None:
        """Run one fetch-and-dispatch cycle.

        @return: The number of tasks dispatched, or None if no fetch was made
            (no subscriptions, no free capacity, or the loop is stopping)
        @raises TransportError: If the fetch failed
        """

        with self.subscriptions.list_active() as snapshot:
            if not snapshot:
                # nothing to fetch for; don't spin
                self._stop.wait(CAPACITY_WAIT_SECONDS)
                return None

            request = self._build_request(snapshot)
            if request is None:
                self.executor.wait_for_capacity(CAPACITY_WAIT_SECONDS)
                return None

            if self._stop.is_set():
                return None

            log.debug(
                "Fetching up to %d task(s) for topics %s",
                request.max_tasks,
                [topic.topic_name for topic in request.topics],
            )
            records = self.coordinator.fetch_and_lock(request)

            return self._dispatch(records, snapshot)

    def _build_request(self, snapshot: SubscriptionSnapshot) -> FetchAndLockRequest | None:
        """A request covering only the topics the executor could start a task for, or None."""

        free = self.executor.available()
        if free <= 0:
            return None

        topics = []
        topic_free = 0

        for subscription in snapshot:
            capacity = self.executor.capacity(subscription)
            if capacity <= 0:
                continue

            topics.append(subscription.fetch_topic())
            topic_free += capacity

        if not topics:
            return None

        return FetchAndLockRequest(
            worker_id=self.config.worker_id,
            max_tasks=min(self.config.max_tasks, free, topic_free),
            topics=tuple(topics),
            use_priority=self.config.use_priority,
            async_response_timeout=self.config.async_response_timeout,
        )

    def _dispatch(self, records: Sequence[Mapping[str, Any]], snapshot: SubscriptionSnapshot) -> int:
        dispatched = 0

        for record in records:
            task_id = record.get("id")

            try:
                task = ExternalTask.load(record, self.data_formats)
            except (AttributeError, KeyError, TypeError, ValueError, PullmanError) as err:
                log.error("Could not read fetched task '%s': %s", task_id, err)
                if task_id is not None:
                    self._fail_unreadable(task_id, err)
                continue

            subscription = snapshot.get(task.topic_name)
            if subscription is None:
                log.warning("Fetched task '%s' for unsubscribed topic '%s'", task.id, task.topic_name)
                self._unlock(task.id)
                continue

            if self._submit(task, subscription):
                dispatched += 1
            else:
                self._unlock(task.id)

        return dispatched

    def _submit(self, task: ExternalTask, subscription: TopicSubscription) -> bool:
        admitted = self.executor.submit(task, subscription)
        if not admitted:
            log.info("No capacity for task '%s' (topic '%s'); handing it back", task.id, task.topic_name)
        return admitted

    def _fail_unreadable(self, task_id: str, err: Exception) -> None:
        """Raise an incident for a record that can't be loaded. Unlocking it would only
        have it fetched again straight away."""

        if self.executor.is_in_flight(task_id):
            return

        failure = FailureReport(error_message=f"Could not read fetched task: {err}", retries=0)

        try:
            self.coordinator.handle_failure(task_id, self.config.worker_id, failure)
        except PullmanError as report_err:
            log.warning("Could not report unreadable task '%s': %s", task_id, report_err)

    def _unlock(self, task_id: str) -> None:
        # a task in flight under the same ID is still ours
        if self.executor.is_in_flight(task_id):
            return

        try:
            self.coordinator.unlock(task_id)
        except PullmanError as err:
            log.warning("Could not unlock task '%s'; it will be refetched once its lock expires: %s", task_id, err)
