"""Tests for TaskService, the reporting API handed to handlers."""

import pytest

from pullman.constants import XML_DATAFORMAT_NAME
from pullman.coordinator.memory import TaskState
from pullman.exception import LockExpiredError, TaskAlreadyReportedError, TransportError
from pullman.worker.service import TaskService
from samples import SAMPLE_XML, a_sample


@pytest.fixture
def service_for(coordinator, registry, config):
    def make(task) -> TaskService:
        return TaskService(task, coordinator, registry, config)

    return make


def test_complete(coordinator, lock_task, service_for):
    """Test that completing sends encoded variables, and frees the lock."""
    task = lock_task()
    service = service_for(task)

    service.complete({"result": "ok", "sample": a_sample()}, {"local": 1})

    stored = coordinator.get(task.id)
    assert stored.state is TaskState.COMPLETED
    assert stored.variables["result"] == {"type": "String", "value": "ok", "valueInfo": {}}
    assert stored.variables["sample"]["type"] == "Object"
    assert stored.local_variables["local"]["value"] == 1
    assert service.reported


def test_complete_reuses_fetched_format(coordinator, lock_task, service_for):
    """Test that an object variable is written back in the format it was fetched in."""
    task = lock_task(
        variables={
            "sample": {
                "type": "Object",
                "value": SAMPLE_XML,
                "valueInfo": {"objectTypeName": "Sample", "serializationDataFormat": XML_DATAFORMAT_NAME},
            }
        }
    )

    service_for(task).complete({"sample": task.get_variable("sample")})

    written = coordinator.get(task.id).variables["sample"]
    assert written["valueInfo"]["serializationDataFormat"] == XML_DATAFORMAT_NAME
    assert written["value"] == SAMPLE_XML


def test_only_one_report(lock_task, service_for):
    """Test that a second report for the same task is refused."""
    service = service_for(lock_task())
    service.complete()

    with pytest.raises(TaskAlreadyReportedError):
        service.handle_failure("too late")


def test_handle_failure(coordinator, lock_task, service_for):
    task = lock_task()

    service_for(task).handle_failure("boom", "traceback...", retries=2, retry_timeout=1000)

    stored = coordinator.get(task.id)
    assert stored.state is TaskState.AVAILABLE
    assert stored.retries == 2
    assert stored.error_message == "boom"
    assert stored.error_details == "traceback..."


def test_handle_failure_clamps_negative_values(coordinator, lock_task, service_for):
    task = lock_task()

    service_for(task).handle_failure("boom", retries=-1, retry_timeout=-5)

    assert coordinator.get(task.id).state is TaskState.INCIDENT


def test_handle_bpmn_error(coordinator, lock_task, service_for):
    task = lock_task()

    service_for(task).handle_bpmn_error("CARD_DECLINED", "Card was declined", {"reason": "limit"})

    stored = coordinator.get(task.id)
    assert stored.state is TaskState.BPMN_ERROR
    assert stored.error_code == "CARD_DECLINED"
    assert stored.variables["reason"]["value"] == "limit"


def test_extend_lock_is_not_a_report(coordinator, lock_task, service_for):
    task = lock_task(lock_duration=1000)
    service = service_for(task)
    before = coordinator.get(task.id).lock_expiration_time

    service.extend_lock(60_000)

    assert coordinator.get(task.id).lock_expiration_time > before
    assert not service.reported

    with pytest.raises(ValueError):
        service.extend_lock(0)


def test_unlock(coordinator, lock_task, service_for):
    task = lock_task()

    service_for(task).unlock()

    assert coordinator.get(task.id).state is TaskState.AVAILABLE


def test_report_after_lock_expiry(coordinator, lock_task, service_for):
    """Test that reports are rejected once the lock has expired, and that this is final."""
    task = lock_task()
    coordinator.expire_lock(task.id)
    service = service_for(task)

    with pytest.raises(LockExpiredError):
        service.complete()

    with pytest.raises(TaskAlreadyReportedError):
        service.complete()


def test_report_can_be_retried_after_transport_error(lock_task, registry, config):
    """Test that an undelivered report doesn't count as the task's outcome."""

    class FlakyCoordinator:
        def __init__(self) -> None:
            self.attempts = 0

        def complete(self, task_id, worker_id, variables, local_variables):
            self.attempts += 1
            if self.attempts == 1:
                raise TransportError("connection reset")

    flaky = FlakyCoordinator()
    service = TaskService(lock_task(), flaky, registry, config)

    with pytest.raises(TransportError):
        service.complete()

    assert not service.reported

    service.complete()
    assert service.reported
    assert flaky.attempts == 2
