"""Pytest configuration and fixtures"""

from collections.abc import Iterator

import pytest

from pullman.client import ExternalTaskClient
from pullman.config import ClientConfig
from pullman.coordinator.memory import MemoryCoordinator
from pullman.scope import LocalScope
from pullman.serialisers.registry import DataFormatRegistry, default_registry
from pullman.types.coordinator import FetchAndLockRequest, FetchTopic
from pullman.types.task import ExternalTask
from samples import Address, Customer, Sample, Samples


@pytest.fixture
def scope() -> LocalScope:
    return LocalScope([Sample, Samples, Address, Customer])


@pytest.fixture
def registry(scope: LocalScope) -> DataFormatRegistry:
    return default_registry(scope)


@pytest.fixture
def config() -> ClientConfig:
    """A config that doesn't long-poll and backs off quickly, so tests don't wait."""

    return ClientConfig(
        base_url="http://coordinator.test/engine-rest",
        worker_id="test-worker",
        max_tasks=4,
        async_response_timeout=None,
        poll_interval=0.01,
        backoff_initial=0.01,
        backoff_max=0.05,
        backoff_jitter=0.0,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def coordinator() -> MemoryCoordinator:
    return MemoryCoordinator()


@pytest.fixture
def client(config: ClientConfig, coordinator: MemoryCoordinator, scope: LocalScope) -> Iterator[ExternalTaskClient]:
    """A client fetching from an in-memory coordinator; closed after the test."""

    client = ExternalTaskClient(config, coordinator=coordinator, scope=scope)
    yield client
    client.close(timeout=5.0)


@pytest.fixture
def lock_task(coordinator: MemoryCoordinator, registry: DataFormatRegistry, config: ClientConfig):
    """Add a task to the coordinator, lock it to the test worker, and return it as an ExternalTask."""

    def lock(topic_name: str = "foo", variables=None, lock_duration: int = 10_000, **attributes) -> ExternalTask:
        task_id = coordinator.add_task(topic_name, variables, **attributes)
        request = FetchAndLockRequest(
            worker_id=config.worker_id,
            max_tasks=1,
            topics=(FetchTopic(topic_name=topic_name, lock_duration=lock_duration),),
        )

        [record] = coordinator.fetch_and_lock(request)
        assert record["id"] == task_id
        return ExternalTask.load(record, registry)

    return lock
