from pullman.worker.backoff import ExponentialBackoff
from pullman.worker.executor import TaskHandlerExecutor
from pullman.worker.limits import ConcurrencyLimit
from pullman.worker.loop import FetchAndLockLoop, LoopState
from pullman.worker.service import TaskService

__all__ = [
    "ConcurrencyLimit",
    "ExponentialBackoff",
    "FetchAndLockLoop",
    "LoopState",
    "TaskHandlerExecutor",
    "TaskService",
]
