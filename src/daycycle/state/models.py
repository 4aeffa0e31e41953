"""Operation, step and schedule records kept in the state store."""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from daycycle.config.models import OperationType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationStatus(str, Enum):
    """Lifecycle states of an operation."""
    INITIATED = "Initiated"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    ROLLED_BACK = "RolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
    OperationStatus.ROLLED_BACK,
})


class StepStatus(str, Enum):
    """Lifecycle states of an operation step."""
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class InitiationMethod(str, Enum):
    MANUAL = "Manual"
    SCHEDULED = "Scheduled"


class ScheduleStatus(str, Enum):
    """Lifecycle states of a scheduled definition."""
    ACTIVE = "Active"
    PAUSED = "Paused"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class Operation(BaseModel):
    """One SOD or EOD run."""

    operation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation_type: OperationType
    business_date: date = Field(default_factory=date.today)
    environment: str
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: OperationStatus = OperationStatus.INITIATED
    initiated_by: str
    initiation_method: InitiationMethod = InitiationMethod.MANUAL
    services_filter: List[str] = Field(default_factory=list)
    dry_run: bool = False
    force_execution: bool = False
    expected_steps: Optional[int] = Field(
        None, description="Number of forward steps the run is expected to record"
    )
    error_details: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class OperationStep(BaseModel):
    """A named step of an operation, upserted by name."""

    operation_id: str
    step_name: str
    step_order: int = Field(..., ge=1)
    status: StepStatus = StepStatus.PENDING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    details: str = ""
    error_message: Optional[str] = None

    @property
    def is_rollback(self) -> bool:
        return self.step_name.startswith("Rollback ")


class ScheduledDefinition(BaseModel):
    """A recurring trigger for an SOD or EOD operation."""

    schedule_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation_type: OperationType
    environment: str
    cron_expression: str
    time_zone: str = "UTC"
    services_filter: List[str] = Field(default_factory=list)
    dry_run: bool = False
    is_enabled: bool = True
    comments: Optional[str] = None
    scheduled_by: str
    created_at: datetime = Field(default_factory=utcnow)
    next_execution_time: datetime
    last_execution_time: Optional[datetime] = None
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    status: ScheduleStatus = ScheduleStatus.ACTIVE


class StepSummary(BaseModel):
    """Step as shown in a status report."""

    step_name: str
    step_order: int
    status: StepStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    details: str = ""
    error_message: Optional[str] = None

    @classmethod
    def from_step(cls, step: OperationStep) -> "StepSummary":
        return cls(**step.model_dump(exclude={"operation_id"}))


class OperationStatusReport(BaseModel):
    """Result of a status query."""

    operation_id: str
    operation_type: OperationType
    status: OperationStatus
    progress_percentage: int = Field(..., ge=0, le=100)
    current_step: str
    steps: List[StepSummary] = Field(default_factory=list)
    start_time: datetime
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None


class OperationResult(BaseModel):
    """Acknowledgment returned when an operation is started or cancelled."""

    operation_id: str
    status: OperationStatus
    message: str
    start_time: datetime
    estimated_duration_minutes: int = 0


class ScheduleResult(BaseModel):
    """Acknowledgment returned by scheduling calls."""

    schedule_id: str
    operation_type: OperationType
    environment: str
    cron_expression: str
    next_execution_time: datetime
    status: ScheduleStatus
    message: str

    @classmethod
    def from_definition(cls, definition: ScheduledDefinition, message: str) -> "ScheduleResult":
        return cls(
            schedule_id=definition.schedule_id,
            operation_type=definition.operation_type,
            environment=definition.environment,
            cron_expression=definition.cron_expression,
            next_execution_time=definition.next_execution_time,
            status=definition.status,
            message=message,
        )


class StateDocument(BaseModel):
    """Everything the store persists, as one JSON document."""

    version: str = "1.0"
    updated_at: datetime = Field(default_factory=utcnow)
    operations: Dict[str, Operation] = Field(default_factory=dict)
    steps: Dict[str, List[OperationStep]] = Field(default_factory=dict)
    schedules: Dict[str, ScheduledDefinition] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OperationRequest(BaseModel):
    """Inbound request to start an operation."""

    environment: str = Field(..., min_length=1)
    services_filter: List[str] = Field(default_factory=list)
    dry_run: bool = False
    force_execution: bool = False
    cutoff_time: Optional[datetime] = None
    comments: Optional[str] = None


class ScheduleRequest(BaseModel):
    """Inbound request to create a scheduled definition."""

    environment: str = Field(..., min_length=1)
    cron_expression: str = Field(..., min_length=1)
    time_zone: str = "UTC"
    services_filter: List[str] = Field(default_factory=list)
    dry_run: bool = False
    is_enabled: bool = True
    comments: Optional[str] = None


class ScheduleUpdate(BaseModel):
    """Partial update of a scheduled definition; unset fields are left alone."""

    cron_expression: Optional[str] = None
    time_zone: Optional[str] = None
    services_filter: Optional[List[str]] = None
    dry_run: Optional[bool] = None
    is_enabled: Optional[bool] = None
    comments: Optional[str] = None
