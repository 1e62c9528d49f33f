"""The external task client, wiring subscriptions, the fetch loop, the handler
executor and a coordinator transport together.

    scope = LocalScope([Sample])

    with ExternalTaskClient(ClientConfig(base_url=...), scope=scope) as client:
        client.subscribe("invoice", handle_invoice)
        ...
"""

from collections.abc import Iterable
from types import TracebackType
from typing import Self

from pullman.config import ClientConfig
from pullman.coordinator.http import HttpCoordinator
from pullman.scope import LocalScope
from pullman.serialisers.registry import DataFormatRegistry, default_registry
from pullman.subscriptions import SubscriptionHandle, TopicSubscription, TopicSubscriptionRegistry
from pullman.types.coordinator import Coordinator
from pullman.types.dataformat import DataFormat
from pullman.types.outcome import Handler, ResultCallback
from pullman.types.scope import Scope
from pullman.utils.logging_config import get_logger
from pullman.worker.executor import TaskHandlerExecutor
from pullman.worker.loop import FetchAndLockLoop, LoopState

log = get_logger(__name__)


class ExternalTaskClient:
    """Subscribe handlers to topics, and run them against tasks fetched from the coordinator."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        coordinator: Coordinator | None = None,
        scope: Scope | None = None,
        data_formats: DataFormatRegistry | None = None,
        autostart: bool = True,
    ) -> None:
        """
        @param config: Client configuration. Defaults to `ClientConfig.from_env()`
        @param coordinator: The coordinator transport. Defaults to an HttpCoordinator for the configured base URL
        @param scope: Object classes that variables may decode into
        @param data_formats: The serialisation registry. Defaults to XML and JSON over `scope`
        @param autostart: Start fetching on the first `subscribe`
        """

        self.config = config or ClientConfig.from_env()
        self.scope = scope or LocalScope()
        self.data_formats = data_formats or default_registry(self.scope)

        self._owns_coordinator = coordinator is None
        self.coordinator = coordinator or HttpCoordinator(self.config)

        self.subscriptions = TopicSubscriptionRegistry()
        self.executor = TaskHandlerExecutor(self.coordinator, self.data_formats, self.config)
        self.loop = FetchAndLockLoop(
            self.subscriptions,
            self.executor,
            self.coordinator,
            self.data_formats,
            self.config,
        )

        self.autostart = autostart
        self._closed = False

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @property
    def closed(self) -> bool:
        return self._closed

    def add_type(self, cls: type, type_name: str | None = None) -> Self:
        """Make a class available to the data formats under `type_name` (default: its name)."""

        self.scope.add_type(cls, type_name)
        return self

    def register_format(self, format_name: str, data_format: DataFormat) -> Self:
        """Register an extra data format for object variables."""

        self.data_formats.register(format_name, data_format)
        return self

    def subscribe(
        self,
        topic_name: str,
        handler: Handler,
        lock_duration: int | None = None,
        variables: Iterable[str] | None = None,
        max_tasks: int | None = None,
        local_variables: bool = False,
        business_key: str | None = None,
        process_definition_key: str | None = None,
        tenant_ids: Iterable[str] | None = None,
        retries: int | None = None,
        retry_timeout: int | None = None,
        on_result: ResultCallback | None = None,
    ) -> SubscriptionHandle:
        """Subscribe a handler to a topic.

        @param topic_name: The topic to fetch tasks from
        @param handler: Called with each task and its TaskService
        @param lock_duration: Milliseconds to lock fetched tasks for. Defaults to the configured lock duration
        @param variables: Names of the variables to fetch. None fetches all of them
        @param max_tasks: At most this many of the topic's tasks run at once
        @param retries: Retries to report when the handler fails and the task has none set yet
        @param retry_timeout: Milliseconds before a failed task may be refetched
        @param on_result: Receives the TaskResult of every task of the topic
        @return: A handle that closes the subscription
        @raises DuplicateSubscriptionError: If the topic is already subscribed
        @raises SubscriptionClosedError: If the client has been closed
        """

        subscription = TopicSubscription(
            topic_name=topic_name,
            handler=handler,
            lock_duration=lock_duration or self.config.lock_duration,
            variable_names=tuple(variables) if variables is not None else None,
            max_tasks=max_tasks,
            local_variables=local_variables,
            business_key=business_key,
            process_definition_key=process_definition_key,
            tenant_ids=tuple(tenant_ids) if tenant_ids is not None else None,
            retries=retries,
            retry_timeout=retry_timeout,
            on_result=on_result,
        )

        handle = self.subscriptions.subscribe(subscription)

        if self.autostart:
            self.start()

        return handle

    def start(self) -> None:
        """Start fetching tasks. Subscribing starts the client automatically unless `autostart` is off."""

        if self._closed:
            return

        self.loop.start()

    @property
    def state(self) -> LoopState:
        return self.loop.state

    def close(self, drain: bool | None = None, timeout: float | None = None) -> bool:
        """Stop fetching, then drain or abandon running handlers.

        @param drain: Wait for running handlers. Defaults to `config.drain_on_shutdown`
        @param timeout: Seconds to wait for the loop and handlers. Defaults to `config.shutdown_timeout`
        @return: True if the loop stopped and no handler is still running
        """

        if self._closed:
            return True

        self._closed = True
        drain = self.config.drain_on_shutdown if drain is None else drain
        timeout = self.config.shutdown_timeout if timeout is None else timeout

        log.info("Closing client for worker '%s'", self.worker_id)

        self.loop.stop()
        stopped = self.loop.join(timeout)
        if not stopped:
            log.warning("Fetch loop did not stop within %ss", timeout)

        drained = self.executor.shutdown(drain=drain, timeout=timeout)
        self.subscriptions.close_all(timeout=timeout)

        if self._owns_coordinator:
            self.coordinator.close()

        return stopped and drained

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
        return None
