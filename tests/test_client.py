"""End-to-end tests: a client fetching from an in-memory coordinator."""

import threading
import time

import pytest

from pullman.client import ExternalTaskClient
from pullman.constants import XML_DATAFORMAT_NAME
from pullman.coordinator.memory import TaskState
from pullman.exception import DuplicateSubscriptionError, LockExpiredError, SubscriptionClosedError
from pullman.types.outcome import OutcomeKind
from pullman.types.value import ObjectValue
from pullman.worker.loop import LoopState
from samples import SAMPLE_XML, ResultCollector, Sample, a_sample


def xml_variable(payload: str, type_name: str = "Sample") -> dict:
    return {
        "type": "Object",
        "value": payload,
        "valueInfo": {"objectTypeName": type_name, "serializationDataFormat": XML_DATAFORMAT_NAME},
    }


def test_xml_variables_are_decoded_lazily(client, coordinator):
    """Two tasks each carrying an XML Sample: the handler decodes it, and can also read it raw."""
    task_ids = [coordinator.add_task("foo", {"xmlVariable": xml_variable(SAMPLE_XML)}) for _ in range(2)]
    seen = {}
    lock = threading.Lock()

    def handler(task, service):
        raw = task.get_variable_typed("xmlVariable", deserialize=False)
        sample = task.get_variable("xmlVariable")

        with lock:
            seen[task.id] = (raw, sample)

    collector = ResultCollector()
    client.subscribe("foo", handler, lock_duration=10_000, on_result=collector)

    results = collector.wait_for(2)

    assert sorted(result.task_id for result in results) == sorted(task_ids)
    assert all(result.kind is OutcomeKind.COMPLETED for result in results)

    for raw, sample in seen.values():
        assert sample == a_sample()
        assert isinstance(raw, ObjectValue)
        assert raw.object_type_name == "Sample"
        assert raw.serialization_data_format == XML_DATAFORMAT_NAME
        assert raw.deserialized is False
        assert raw.serialized_value == SAMPLE_XML


def test_list_of_samples_decodes_as_one_object(client, coordinator):
    """A list of two samples serialised as one XML document decodes to a two-element ordered list."""
    payload = (
        "<samples>"
        "<sample><stringProperty>first</stringProperty><intProperty>1</intProperty><booleanProperty>true</booleanProperty></sample>"
        "<sample><stringProperty>second</stringProperty><intProperty>2</intProperty><booleanProperty>false</booleanProperty></sample>"
        "</samples>"
    )
    coordinator.add_task("foo", {"samples": xml_variable(payload, "Samples")})
    decoded = []

    collector = ResultCollector()
    client.subscribe("foo", lambda task, service: decoded.append(task.get_variable("samples")), on_result=collector)
    collector.wait_for(1)

    [samples] = decoded
    assert list(samples) == [Sample("first", 1, True), Sample("second", 2, False)]


def test_rejected_completion_after_lock_expiry(client, coordinator):
    """A completion for an expired lock surfaces LockExpiredError without a retry, and the loop keeps going."""
    expired_id = coordinator.add_task("foo", task_id="expired")

    def handler(task, service):
        if task.id == expired_id:
            coordinator.expire_lock(task.id)

    collector = ResultCollector()
    client.subscribe("foo", handler, on_result=collector)

    [first] = collector.wait_for(1)
    assert first.kind is OutcomeKind.LOCK_EXPIRED
    assert isinstance(first.error, LockExpiredError)

    rejected = [report for report in coordinator.reports if report.task_id == expired_id and report.action == "complete"]
    assert len(rejected) >= 1
    assert not rejected[0].accepted

    later_id = coordinator.add_task("foo", task_id="later")
    assert coordinator.wait_for_state(later_id, TaskState.COMPLETED)
    assert client.state is LoopState.RUNNING


def test_outputs_are_written_back(client, coordinator):
    task_id = coordinator.add_task("foo", {"xmlVariable": xml_variable(SAMPLE_XML)})

    def handler(task, service):
        sample = task.get_variable("xmlVariable")
        return {"xmlVariable": Sample(sample.string_property.upper(), sample.int_property + 1, False)}

    client.subscribe("foo", handler)

    assert coordinator.wait_for_state(task_id, TaskState.COMPLETED)
    written = coordinator.get(task_id).variables["xmlVariable"]
    assert written["valueInfo"]["serializationDataFormat"] == XML_DATAFORMAT_NAME
    assert "<stringProperty>A STRING</stringProperty>" in written["value"]


def test_undecodable_variable_fails_only_its_task(client, coordinator):
    """A broken payload fails its own task; other tasks in the batch complete."""
    broken_id = coordinator.add_task("foo", {"xmlVariable": xml_variable("<sample>")})
    good_id = coordinator.add_task("foo", {"xmlVariable": xml_variable(SAMPLE_XML)})

    client.subscribe("foo", lambda task, service: {"n": task.get_variable("xmlVariable").int_property})

    assert coordinator.wait_for_state(good_id, TaskState.COMPLETED)
    assert coordinator.wait_until(lambda c: c.get(broken_id).error_message is not None)
    assert coordinator.get(broken_id).error_message.startswith("DeserializationError")


def test_file_variable_does_not_block_the_task(client, coordinator):
    """A File variable loads like any other, and the task completes once, without being handed back."""
    task_id = coordinator.add_task(
        "foo",
        {
            "doc": {"type": "File", "value": None, "valueInfo": {"filename": "invoice.pdf"}},
            "xmlVariable": xml_variable(SAMPLE_XML),
        },
    )

    client.subscribe("foo", lambda task, service: {"n": task.get_variable("xmlVariable").int_property})

    assert coordinator.wait_for_state(task_id, TaskState.COMPLETED)
    assert [report.action for report in coordinator.reports] == ["complete"]
    assert coordinator.get(task_id).variables["n"]["value"] == 42


def test_duplicate_subscription(client):
    client.subscribe("foo", lambda task, service: None)

    with pytest.raises(DuplicateSubscriptionError):
        client.subscribe("foo", lambda task, service: None)


def test_unsubscribe_stops_fetching_topic(client, coordinator):
    """Test that once a subscription is closed, its topic is no longer fetched."""
    handle = client.subscribe("foo", lambda task, service: None)
    client.subscribe("bar", lambda task, service: None)
    assert coordinator.wait_until(lambda c: len(c.fetch_requests) > 0)

    assert handle.close(timeout=5)
    fetched_after = len(coordinator.fetch_requests)
    task_id = coordinator.add_task("foo")

    assert coordinator.wait_until(lambda c: len(c.fetch_requests) > fetched_after + 2)
    assert all(request.topic("foo") is None for request in coordinator.fetch_requests[fetched_after:])
    assert coordinator.get(task_id).state is TaskState.AVAILABLE


def test_close_drains_running_handlers(config, coordinator, scope):
    """Test that closing waits for running handlers, and refuses new subscriptions."""
    started = threading.Event()
    client = ExternalTaskClient(config, coordinator=coordinator, scope=scope)
    task_id = coordinator.add_task("foo")

    def slow(task, service):
        started.set()
        threading.Event().wait(0.2)

    client.subscribe("foo", slow)
    assert started.wait(5)

    assert client.close(drain=True, timeout=5)
    assert client.closed
    assert client.state is LoopState.STOPPED
    assert coordinator.get(task_id).state is TaskState.COMPLETED

    with pytest.raises(SubscriptionClosedError):
        client.subscribe("bar", lambda task, service: None)


def test_close_abandons_running_handlers(config, coordinator, scope):
    """Test that closing without draining returns promptly, and the running handler still finishes."""
    started, gate = threading.Event(), threading.Event()
    client = ExternalTaskClient(config, coordinator=coordinator, scope=scope)
    task_id = coordinator.add_task("foo")

    def gated(task, service):
        started.set()
        gate.wait(5)

    client.subscribe("foo", gated)
    assert started.wait(5)

    began = time.monotonic()
    assert client.close(drain=False, timeout=0.1) is False
    assert time.monotonic() - began < 2
    assert client.closed
    assert coordinator.get(task_id).state is TaskState.LOCKED

    gate.set()
    assert coordinator.wait_for_state(task_id, TaskState.COMPLETED)


def test_autostart_off(config, coordinator, scope):
    with ExternalTaskClient(config, coordinator=coordinator, scope=scope, autostart=False) as client:
        client.subscribe("foo", lambda task, service: None)

        assert client.state is LoopState.STOPPED
        assert coordinator.fetch_requests == []

        client.start()
        assert coordinator.wait_until(lambda c: len(c.fetch_requests) > 0)

    assert client.closed
