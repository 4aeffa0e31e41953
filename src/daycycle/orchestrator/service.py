"""Operation service: starts runs in the background and answers status queries."""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from daycycle.config.models import OperationType
from daycycle.config.parser import Config, ServiceRegistry
from daycycle.orchestrator.base import BaseOrchestrator
from daycycle.orchestrator.eod import EODOrchestrator
from daycycle.orchestrator.sod import SODOrchestrator
from daycycle.remote import CommandBankingOperations, SimulatedBankingOperations, create_executor
from daycycle.state.models import (
    InitiationMethod,
    Operation,
    OperationRequest,
    OperationResult,
    OperationStatus,
    OperationStatusReport,
    StepStatus,
    StepSummary,
)
from daycycle.state.store import StateStore
from daycycle.utils.errors import ErrorContext, OrchestrationError, StateError
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SOD_MINUTES = 15
DEFAULT_EOD_MINUTES = 75
# Used for progress while a run has not yet recorded its expected step count
FALLBACK_EXPECTED_STEPS = 10


@dataclass
class RunHandle:
    """Join point and cancel switch of a background run."""

    operation_id: str
    future: Future
    cancel_event: threading.Event


class OperationService:
    """Accepts start, status and cancel requests for SOD and EOD operations.

    Each accepted operation runs on a bounded worker pool; the caller gets
    an Initiated acknowledgment straight away and follows progress through
    get_operation_status().
    """

    def __init__(
        self,
        store: StateStore,
        sod: SODOrchestrator,
        eod: EODOrchestrator,
        max_concurrent_operations: int = 4
    ):
        """Initialize operation service.

        Args:
            store: Operation state store
            sod: Start of Day orchestrator
            eod: End of Day orchestrator
            max_concurrent_operations: Worker threads available to operation runs
        """
        self.store = store
        self.orchestrators: Dict[OperationType, BaseOrchestrator] = {
            OperationType.SOD: sod,
            OperationType.EOD: eod,
        }
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrent_operations, thread_name_prefix="daycycle-op"
        )
        self._handles: Dict[str, RunHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, store: Optional[StateStore] = None) -> "OperationService":
        """Wire store, registry, executors and orchestrators from configuration."""
        store = store or StateStore(config.project.state_path)
        registry = ServiceRegistry.from_config(config)
        executor = create_executor(config.remote)

        if config.remote.executor == 'ssm':
            banking = CommandBankingOperations(executor, config.eod)
        else:
            banking = SimulatedBankingOperations()

        sod = SODOrchestrator(
            store, registry, executor,
            settings=config.orchestration, validation_config=config.validation
        )
        eod = EODOrchestrator(
            store, registry, banking,
            settings=config.orchestration, validation_config=config.validation
        )
        return cls(store, sod, eod, config.orchestration.max_concurrent_operations)

    @property
    def sod(self) -> SODOrchestrator:
        return self.orchestrators[OperationType.SOD]

    @property
    def eod(self) -> EODOrchestrator:
        return self.orchestrators[OperationType.EOD]

    def start_sod(
        self,
        request: OperationRequest,
        initiated_by: str,
        initiation_method: InitiationMethod = InitiationMethod.MANUAL
    ) -> OperationResult:
        """Accept a Start of Day request and run it in the background."""
        estimated_minutes = DEFAULT_SOD_MINUTES
        expected_steps = None
        try:
            plan = self.sod.create_plan(request.services_filter)
        except OrchestrationError as e:
            # The run records the failure in its own steps
            logger.warning(f"SOD plan preview failed: {e.message}")
        else:
            estimated_minutes = plan.estimated_minutes or DEFAULT_SOD_MINUTES
            expected_steps = self.sod.expected_steps(plan)

        return self._start(
            OperationType.SOD, request, initiated_by, initiation_method,
            estimated_minutes, expected_steps
        )

    def start_eod(
        self,
        request: OperationRequest,
        initiated_by: str,
        initiation_method: InitiationMethod = InitiationMethod.MANUAL
    ) -> OperationResult:
        """Accept an End of Day request and run it in the background."""
        return self._start(
            OperationType.EOD, request, initiated_by, initiation_method,
            DEFAULT_EOD_MINUTES, self.eod.expected_steps()
        )

    def start(
        self,
        operation_type: OperationType,
        request: OperationRequest,
        initiated_by: str,
        initiation_method: InitiationMethod = InitiationMethod.MANUAL
    ) -> OperationResult:
        if OperationType(operation_type) == OperationType.SOD:
            return self.start_sod(request, initiated_by, initiation_method)
        return self.start_eod(request, initiated_by, initiation_method)

    def _start(
        self,
        operation_type: OperationType,
        request: OperationRequest,
        initiated_by: str,
        initiation_method: InitiationMethod,
        estimated_minutes: int,
        expected_steps: Optional[int]
    ) -> OperationResult:
        operation = Operation(
            operation_type=operation_type,
            environment=request.environment,
            initiated_by=initiated_by,
            initiation_method=initiation_method,
            services_filter=request.services_filter,
            dry_run=request.dry_run,
            force_execution=request.force_execution,
            expected_steps=expected_steps,
        )
        self.store.create_operation(operation)

        cancel_event = threading.Event()
        orchestrator = self.orchestrators[operation_type]
        with self._lock:
            future = self._pool.submit(
                orchestrator.run, operation.operation_id, cancel_event, request.cutoff_time
            )
            self._handles[operation.operation_id] = RunHandle(
                operation.operation_id, future, cancel_event
            )
        future.add_done_callback(lambda f: self._on_done(operation.operation_id, f))

        logger.info(
            f"{operation_type.value} operation initiated by {initiated_by} "
            f"({initiation_method.value}) for {request.environment}",
            extra={'operation_id': operation.operation_id}
        )
        return OperationResult(
            operation_id=operation.operation_id,
            status=OperationStatus.INITIATED,
            message=f"{operation_type.value} operation initiated for {request.environment}"
                    + (" (dry run)" if request.dry_run else ""),
            start_time=operation.start_time,
            estimated_duration_minutes=estimated_minutes,
        )

    def _on_done(self, operation_id: str, future: Future) -> None:
        with self._lock:
            self._handles.pop(operation_id, None)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            # run() records operation failures itself; this is a bookkeeping failure
            logger.error(
                f"Operation run crashed: {error}", exc_info=error,
                extra={'operation_id': operation_id}
            )

    def get_operation_status(self, operation_id: str) -> OperationStatusReport:
        """Report status, progress and steps of an operation.

        Raises:
            OperationNotFoundError: If the operation does not exist
        """
        operation = self.store.get_operation(operation_id)
        steps = self.store.get_steps(operation_id)

        running = [s for s in steps if s.status == StepStatus.RUNNING]
        if operation.status in (OperationStatus.INITIATED, OperationStatus.RUNNING) and running:
            current_step = max(running, key=lambda s: s.step_order).step_name
        else:
            current_step = operation.status.value

        return OperationStatusReport(
            operation_id=operation.operation_id,
            operation_type=operation.operation_type,
            status=operation.status,
            progress_percentage=self._progress(operation, steps),
            current_step=current_step,
            steps=[StepSummary.from_step(step) for step in steps],
            start_time=operation.start_time,
            end_time=operation.end_time,
            error_message=operation.error_details,
        )

    @staticmethod
    def _progress(operation: Operation, steps) -> int:
        status = operation.status
        if status == OperationStatus.COMPLETED:
            return 100
        if status == OperationStatus.INITIATED:
            return 5
        if status != OperationStatus.RUNNING:
            return 0

        completed = sum(
            1 for s in steps if s.status == StepStatus.COMPLETED and not s.is_rollback
        )
        expected = operation.expected_steps or FALLBACK_EXPECTED_STEPS
        return min(99, completed * 100 // expected)

    def cancel_operation(self, operation_id: str, cancelled_by: str) -> OperationResult:
        """Request cancellation of an initiated or running operation.

        The run stops at its next cancellation checkpoint and ends Cancelled.

        Raises:
            OperationNotFoundError: If the operation does not exist
            StateError: If the operation is already finished
        """
        operation = self.store.get_operation(operation_id)
        if operation.status not in (OperationStatus.INITIATED, OperationStatus.RUNNING):
            raise StateError(
                f"Operation {operation_id} is {operation.status.value} and cannot be cancelled",
                context=ErrorContext(operation_id=operation_id)
            )

        with self._lock:
            handle = self._handles.get(operation_id)

        if handle is not None:
            handle.cancel_event.set()
            message = f"Cancellation requested by {cancelled_by}"
        else:
            # No live run here; a run owned by another process stops at its next checkpoint
            operation = self.store.update_operation_status(
                operation_id, OperationStatus.CANCELLED,
                error_details=f"Cancelled by {cancelled_by}; no active run"
            )
            message = f"Operation cancelled by {cancelled_by}"

        logger.warning(message, extra={'operation_id': operation_id})
        return OperationResult(
            operation_id=operation_id,
            status=operation.status,
            message=message,
            start_time=operation.start_time,
        )

    def list_operations(
        self,
        page: int = 1,
        page_size: int = 20,
        operation_type: Optional[OperationType] = None,
        environment: Optional[str] = None
    ) -> Tuple[List[Operation], int]:
        return self.store.list_operations(page, page_size, operation_type, environment)

    def wait(self, operation_id: str, timeout: Optional[float] = None) -> Operation:
        """Block until a run finishes and return the operation.

        Raises:
            concurrent.futures.TimeoutError: If the run is still going after timeout
        """
        with self._lock:
            handle = self._handles.get(operation_id)
        if handle is not None:
            handle.future.result(timeout=timeout)
        return self.store.get_operation(operation_id)

    def active_operations(self) -> List[str]:
        with self._lock:
            return list(self._handles)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        """Stop accepting work; optionally cancel runs still in progress."""
        if cancel_running:
            with self._lock:
                for handle in self._handles.values():
                    handle.cancel_event.set()
        self._pool.shutdown(wait=wait)
