"""Operation state records and the state store."""

from .models import (
    Operation,
    OperationStatus,
    OperationStep,
    StepStatus,
    InitiationMethod,
    ScheduledDefinition,
    ScheduleStatus,
    OperationStatusReport,
    OperationResult,
    ScheduleResult,
    StepSummary,
    OperationRequest,
    ScheduleRequest,
    ScheduleUpdate,
)
from .store import StateLockError, StateStore

__all__ = [
    "Operation",
    "OperationStatus",
    "OperationStep",
    "StepStatus",
    "InitiationMethod",
    "ScheduledDefinition",
    "ScheduleStatus",
    "OperationStatusReport",
    "OperationResult",
    "ScheduleResult",
    "StepSummary",
    "OperationRequest",
    "ScheduleRequest",
    "ScheduleUpdate",
    "StateStore",
    "StateLockError",
]
