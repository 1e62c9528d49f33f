from pullman.client import ExternalTaskClient
from pullman.config import ClientConfig
from pullman.exception import BpmnError, LockExpiredError, PullmanError
from pullman.scope import LocalScope
from pullman.types import Complete, ExternalTask, Failure, OutcomeKind, TaskResult
from pullman.worker.service import TaskService

__version__ = "0.1.0"

__all__ = [
    "BpmnError",
    "ClientConfig",
    "Complete",
    "ExternalTask",
    "ExternalTaskClient",
    "Failure",
    "LocalScope",
    "LockExpiredError",
    "OutcomeKind",
    "PullmanError",
    "TaskResult",
    "TaskService",
]
