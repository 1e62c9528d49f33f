from pullman.coordinator.http import HttpCoordinator
from pullman.coordinator.memory import MemoryCoordinator, MemoryTask, Report, TaskState

__all__ = [
    "HttpCoordinator",
    "MemoryCoordinator",
    "MemoryTask",
    "Report",
    "TaskState",
]
