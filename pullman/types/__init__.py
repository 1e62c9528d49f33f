"""Core Pullman types.

Kept free of runtime dependencies on the worker machinery, so that data
formats, coordinators and handlers can all import from here.
"""

from pullman.types.coordinator import (
    BpmnErrorReport,
    Coordinator,
    FailureReport,
    FetchAndLockRequest,
    FetchTopic,
)
from pullman.types.dataformat import DataFormat
from pullman.types.outcome import (
    Complete,
    Failure,
    Handler,
    Outcome,
    OutcomeKind,
    ResultCallback,
    TaskResult,
)
from pullman.types.scope import Scope
from pullman.types.task import ExternalTask
from pullman.types.value import (
    DecodeState,
    ObjectDecoder,
    ObjectValue,
    PrimitiveValue,
    SerialisedVariable,
    TypedValue,
    UnreadableValue,
    ValueType,
)

__all__ = [
    "BpmnErrorReport",
    "Complete",
    "Coordinator",
    "DataFormat",
    "DecodeState",
    "ExternalTask",
    "Failure",
    "FailureReport",
    "FetchAndLockRequest",
    "FetchTopic",
    "Handler",
    "ObjectDecoder",
    "ObjectValue",
    "Outcome",
    "OutcomeKind",
    "PrimitiveValue",
    "ResultCallback",
    "Scope",
    "SerialisedVariable",
    "TaskResult",
    "TypedValue",
    "UnreadableValue",
    "ValueType",
]
