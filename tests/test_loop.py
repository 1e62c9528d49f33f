"""Tests for the fetch-and-lock loop: request building, backpressure, dispatch and recovery."""

from dataclasses import replace
import threading

import pytest

from pullman.coordinator.memory import MemoryCoordinator, TaskState
from pullman.subscriptions import TopicSubscription, TopicSubscriptionRegistry
from pullman.worker.executor import TaskHandlerExecutor
from pullman.worker.loop import FetchAndLockLoop, LoopState


class OverDeliveringCoordinator(MemoryCoordinator):
    """Ignores the requested maxTasks, like a misbehaving coordinator."""

    def fetch_and_lock(self, request):
        return super().fetch_and_lock(replace(request, max_tasks=100))


class FlakyCoordinator(MemoryCoordinator):
    """Raises an unexpected error on the first fetch."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = True

    def fetch_and_lock(self, request):
        if self.broken:
            self.broken = False
            raise RuntimeError("unexpected")
        return super().fetch_and_lock(request)


def make_loop(coordinator, registry, config):
    subscriptions = TopicSubscriptionRegistry()
    executor = TaskHandlerExecutor(coordinator, registry, config)
    loop = FetchAndLockLoop(subscriptions, executor, coordinator, registry, config)
    return loop, subscriptions, executor


@pytest.fixture
def gate():
    """A handler that blocks until the test opens the gate."""
    opened = threading.Event()

    def handler(task, service):
        opened.wait(5)

    handler.open = opened.set
    yield handler
    opened.set()


def subscription(topic_name, handler, **kwargs) -> TopicSubscription:
    return TopicSubscription(topic_name=topic_name, handler=handler, lock_duration=10_000, **kwargs)


def test_request_covers_all_topics(coordinator, registry, config):
    """Test that a fetch asks for every subscribed topic, bounded by free capacity."""
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", lambda task, service: None, variable_names=("a",)))
    subscriptions.subscribe(subscription("bar", lambda task, service: None, max_tasks=1))

    assert loop.poll_once() == 0

    [request] = coordinator.fetch_requests
    assert request.worker_id == "test-worker"
    assert [topic.topic_name for topic in request.topics] == ["foo", "bar"]
    assert request.topic("foo").variables == ("a",)
    assert request.max_tasks == 4
    assert request.async_response_timeout is None
    executor.shutdown()


def test_dispatches_fetched_tasks(coordinator, registry, config):
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", lambda task, service: {"seen": task.get_variable("n")}))
    task_ids = [coordinator.add_task("foo", {"n": {"type": "Integer", "value": n}}) for n in range(3)]

    assert loop.poll_once() == 3

    for task_id in task_ids:
        assert coordinator.wait_for_state(task_id, TaskState.COMPLETED)
    executor.shutdown()


def test_saturated_topic_is_excluded(coordinator, registry, config, gate):
    """Test that a topic at its max_tasks is left out of the next fetch, and maxTasks shrinks."""
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", gate, max_tasks=1))
    subscriptions.subscribe(subscription("bar", lambda task, service: None))
    coordinator.add_task("foo")

    assert loop.poll_once() == 1

    loop.poll_once()

    second = coordinator.fetch_requests[-1]
    assert [topic.topic_name for topic in second.topics] == ["bar"]
    assert second.max_tasks == 3

    gate.open()
    executor.shutdown(drain=True, timeout=5)


def test_no_fetch_without_capacity(coordinator, registry, config, gate):
    """Test that nothing is fetched while every topic is saturated."""
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", gate, max_tasks=1))
    coordinator.add_task("foo")
    loop.poll_once()
    coordinator.add_task("foo")

    assert loop.poll_once() is None
    assert len(coordinator.fetch_requests) == 1

    gate.open()
    executor.shutdown(drain=True, timeout=5)


def test_refused_tasks_are_unlocked(registry, config, gate):
    """Test that tasks delivered beyond capacity are handed back to the coordinator."""
    coordinator = OverDeliveringCoordinator()
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", gate, max_tasks=1))
    task_ids = [coordinator.add_task("foo") for _ in range(3)]

    assert loop.poll_once() == 1

    states = sorted(coordinator.get(task_id).state for task_id in task_ids)
    assert states == [TaskState.AVAILABLE, TaskState.AVAILABLE, TaskState.LOCKED]
    assert [report.action for report in coordinator.reports] == ["unlock", "unlock"]

    gate.open()
    executor.shutdown(drain=True, timeout=5)


def test_no_subscriptions(coordinator, registry, config):
    loop, _subscriptions, executor = make_loop(coordinator, registry, config)

    assert loop.poll_once() is None
    assert coordinator.fetch_requests == []
    executor.shutdown()


def test_start_and_stop(coordinator, registry, config):
    """Test the loop's state transitions."""
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", lambda task, service: None))

    assert loop.state is LoopState.STOPPED

    loop.start()
    assert loop.state in (LoopState.RUNNING, LoopState.STOPPED)
    assert coordinator.wait_until(lambda c: len(c.fetch_requests) > 0)

    loop.stop()
    assert loop.join(timeout=5)
    assert loop.state is LoopState.STOPPED

    fetches = len(coordinator.fetch_requests)
    threading.Event().wait(0.1)
    assert len(coordinator.fetch_requests) == fetches
    executor.shutdown()


def test_recovers_from_transport_errors(coordinator, registry, config):
    """Test that fetch failures back off and retry, and that the backoff resets after a success."""
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", lambda task, service: None))
    coordinator.fail_next_fetches(3)
    task_id = coordinator.add_task("foo")

    loop.start()
    try:
        assert coordinator.wait_for_state(task_id, TaskState.COMPLETED)
        assert coordinator.wait_until(lambda c: loop.backoff.failures == 0)
    finally:
        loop.stop()
        loop.join(timeout=5)
        executor.shutdown()


def test_recovers_from_unexpected_errors(registry, config):
    coordinator = FlakyCoordinator()
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", lambda task, service: None))
    task_id = coordinator.add_task("foo")

    loop.start()
    try:
        assert coordinator.wait_for_state(task_id, TaskState.COMPLETED)
    finally:
        loop.stop()
        loop.join(timeout=5)
        executor.shutdown()


class MalformedRecordCoordinator(MemoryCoordinator):
    """Returns records whose variables aren't a map."""

    def fetch_and_lock(self, request):
        return [{**record, "variables": ["not", "a", "map"]} for record in super().fetch_and_lock(request)]


def test_unreadable_variables_reach_the_handler(coordinator, registry, config):
    """Test that a task with a File variable and a malformed Integer still runs; only reading the
    malformed one fails."""
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    seen = []

    def handler(task, service):
        seen.append(task.get_variable("doc"))
        return {"count": task.get_variable("count")}

    subscriptions.subscribe(subscription("foo", handler))
    task_id = coordinator.add_task(
        "foo",
        {
            "doc": {"type": "File", "value": None, "valueInfo": {"filename": "invoice.pdf", "mimeType": "application/pdf"}},
            "count": {"type": "Integer", "value": "many"},
        },
    )

    assert loop.poll_once() == 1
    assert coordinator.wait_until(lambda c: c.get(task_id).error_message is not None)

    assert seen == [None]
    assert coordinator.get(task_id).error_message.startswith("DeserializationError")
    assert [report.action for report in coordinator.reports] == ["failure"]
    executor.shutdown(drain=True, timeout=5)


def test_unloadable_record_raises_an_incident(registry, config):
    """Test that a record that can't be loaded is failed without retries, not unlocked and refetched."""
    coordinator = MalformedRecordCoordinator()
    loop, subscriptions, executor = make_loop(coordinator, registry, config)
    subscriptions.subscribe(subscription("foo", lambda task, service: None))
    task_id = coordinator.add_task("foo")

    assert loop.poll_once() == 0
    assert loop.poll_once() == 0

    assert coordinator.get(task_id).state is TaskState.INCIDENT
    assert [report.action for report in coordinator.reports] == ["failure"]
    assert len(coordinator.fetch_requests) == 2
    executor.shutdown()
