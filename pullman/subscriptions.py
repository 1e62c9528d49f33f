"""Topic subscriptions.

The registry is pure bookkeeping: which topics this worker fetches, with
which handler and options. The fetch loop reads a snapshot once per poll
cycle; callers add and remove subscriptions from any thread.

Closing a subscription blocks until no in-flight fetch batch still
references the topic, so that once `close()` returns no new task for the
topic will be dispatched. Handlers already running are left alone.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from threading import Condition, Lock
import time
from types import TracebackType

from pullman.exception import DuplicateSubscriptionError, SubscriptionClosedError
from pullman.types.coordinator import FetchTopic
from pullman.types.outcome import Handler, ResultCallback
from pullman.utils.logging_config import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class TopicSubscription:
    """A worker's subscription to a topic."""

    topic_name: str
    handler: Handler
    # Milliseconds to lock fetched tasks for
    lock_duration: int
    # Variables to fetch. None fetches all of them
    variable_names: tuple[str, ...] | None = None
    # At most this many tasks of the topic run at once. None leaves only the global cap
    max_tasks: int | None = None
    local_variables: bool = False
    business_key: str | None = None
    process_definition_key: str | None = None
    tenant_ids: tuple[str, ...] | None = None
    # Failure report hints; None falls back to the client configuration
    retries: int | None = None
    retry_timeout: int | None = None
    # Receives a TaskResult for every task of this topic
    on_result: ResultCallback | None = None

    def __post_init__(self) -> None:
        if not self.topic_name:
            raise ValueError("topic_name must not be empty")
        if self.lock_duration <= 0:
            raise ValueError("lock_duration must be positive")
        if self.max_tasks is not None and self.max_tasks < 1:
            raise ValueError("max_tasks must be at least 1")

    def fetch_topic(self) -> FetchTopic:
        """This subscription's part of a fetch-and-lock request."""

        return FetchTopic(
            topic_name=self.topic_name,
            lock_duration=self.lock_duration,
            variables=self.variable_names,
            local_variables=self.local_variables,
            business_key=self.business_key,
            process_definition_key=self.process_definition_key,
            tenant_ids=self.tenant_ids,
        )


class SubscriptionSnapshot:
    """An immutable view of the active subscriptions at one moment.

    The fetch loop holds a snapshot while its fetch batch is in flight, and
    must `release()` it once the batch has been dispatched. Usable as a
    context manager.
    """

    def __init__(self, registry: "TopicSubscriptionRegistry", subscriptions: tuple[TopicSubscription, ...]) -> None:
        self._registry = registry
        self.subscriptions = subscriptions
        self._released = False

    @property
    def topic_names(self) -> tuple[str, ...]:
        return tuple(subscription.topic_name for subscription in self.subscriptions)

    def get(self, topic_name: str) -> TopicSubscription | None:
        for subscription in self.subscriptions:
            if subscription.topic_name == topic_name:
                return subscription
        return None

    def release(self) -> None:
        """Stop referencing these topics. Idempotent."""

        if self._released:
            return

        self._released = True
        self._registry._release(self)

    def __iter__(self) -> Iterator[TopicSubscription]:
        return iter(self.subscriptions)

    def __len__(self) -> int:
        return len(self.subscriptions)

    def __bool__(self) -> bool:
        return bool(self.subscriptions)

    def __enter__(self) -> "SubscriptionSnapshot":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
        return None


class SubscriptionHandle:
    """Returned by `subscribe`; closes the subscription."""

    def __init__(self, registry: "TopicSubscriptionRegistry", subscription: TopicSubscription) -> None:
        self._registry = registry
        self.subscription = subscription
        self._closed = False
        self._lock = Lock()

    @property
    def topic_name(self) -> str:
        return self.subscription.topic_name

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, timeout: float | None = None) -> bool:
        """Remove the subscription, waiting until no fetch batch in flight still references it.

        @param timeout: Seconds to wait for in-flight batches. None waits indefinitely
        @return: True if no batch references the topic any more, False if the wait timed out
        """

        with self._lock:
            if self._closed:
                return True
            self._closed = True

        return self._registry.unsubscribe(self.subscription.topic_name, timeout=timeout, _subscription=self.subscription)

    unsubscribe = close

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
        return None


class TopicSubscriptionRegistry:
    """Thread-safe registry of active topic subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, TopicSubscription] = {}
        self._outstanding: set[SubscriptionSnapshot] = set()
        self._condition = Condition(Lock())
        self._closed = False

    def subscribe(self, subscription: TopicSubscription) -> SubscriptionHandle:
        """Add a subscription.

        @param subscription: The subscription to add
        @return: A handle that removes the subscription when closed
        @raises DuplicateSubscriptionError: If the topic already has an active subscription
        @raises SubscriptionClosedError: If the registry has been closed
        """

        with self._condition:
            if self._closed:
                raise SubscriptionClosedError("Cannot subscribe; the registry has been closed")

            if subscription.topic_name in self._subscriptions:
                raise DuplicateSubscriptionError(subscription.topic_name)

            self._subscriptions[subscription.topic_name] = subscription

        log.info("Subscribed to topic '%s'", subscription.topic_name)
        return SubscriptionHandle(self, subscription)

    def unsubscribe(
        self,
        topic_name: str,
        timeout: float | None = None,
        _subscription: TopicSubscription | None = None,
    ) -> bool:
        """Remove a topic's subscription, then wait until no outstanding snapshot references it.

        @param topic_name: The topic to remove
        @param timeout: Seconds to wait. None waits indefinitely
        @return: True once no snapshot references the topic; False if the wait timed out
        """

        deadline = None if timeout is None else time.monotonic() + timeout

        with self._condition:
            current = self._subscriptions.get(topic_name)

            # a handle only removes its own subscription, not a later one for the same topic
            if current is not None and (_subscription is None or current is _subscription):
                del self._subscriptions[topic_name]
                log.info("Unsubscribed from topic '%s'", topic_name)

            while self._referenced(topic_name, _subscription):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    log.warning("Timed out waiting for in-flight fetches of topic '%s'", topic_name)
                    return False

                self._condition.wait(remaining)

        return True

    def list_active(self) -> SubscriptionSnapshot:
        """Snapshot the active subscriptions, ordered by subscription time.

        The caller must release the snapshot once it's done with it.
        """

        with self._condition:
            # dicts keep insertion order, which is subscription order
            subscriptions = tuple(self._subscriptions.values())
            snapshot = SubscriptionSnapshot(self, subscriptions)
            self._outstanding.add(snapshot)

        return snapshot

    def get(self, topic_name: str) -> TopicSubscription | None:
        with self._condition:
            return self._subscriptions.get(topic_name)

    def is_active(self, subscription: TopicSubscription) -> bool:
        """Is this exact subscription still active?"""

        with self._condition:
            return self._subscriptions.get(subscription.topic_name) is subscription

    def close_all(self, timeout: float | None = None) -> None:
        """Remove every subscription and refuse new ones."""

        with self._condition:
            self._closed = True
            topic_names = list(self._subscriptions)

        for topic_name in topic_names:
            self.unsubscribe(topic_name, timeout=timeout)

    def __contains__(self, topic_name: object) -> bool:
        with self._condition:
            return topic_name in self._subscriptions

    def __len__(self) -> int:
        with self._condition:
            return len(self._subscriptions)

    def _referenced(self, topic_name: str, subscription: TopicSubscription | None) -> bool:
        for snapshot in self._outstanding:
            held = snapshot.get(topic_name)
            if held is not None and (subscription is None or held is subscription):
                return True
        return False

    def _release(self, snapshot: SubscriptionSnapshot) -> None:
        with self._condition:
            self._outstanding.discard(snapshot)
            self._condition.notify_all()
