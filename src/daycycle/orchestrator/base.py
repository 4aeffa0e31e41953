"""Shared run loop, step bookkeeping and failure handling for orchestrators."""

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Set

from daycycle.config.models import (
    OperationType,
    OrchestrationConfig,
    ServiceDefinition,
    ValidationConfig,
)
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.dependency_graph import DependencyResolver
from daycycle.orchestrator.rollback import RollbackManager, RollbackResult
from daycycle.orchestrator.validation import PreValidationReport, PreValidator
from daycycle.state.models import Operation, OperationStatus, OperationStep, StepStatus
from daycycle.state.store import StateStore
from daycycle.utils.errors import (
    DependencyError,
    ErrorContext,
    OperationCancelledError,
    OrchestrationError,
    StateError,
    ValidationError,
    error_handler,
)
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RunContext:
    """Per-run state shared by the steps of one operation."""

    operation: Operation
    cancel_event: threading.Event
    cutoff_time: Optional[datetime] = None
    store: Optional[StateStore] = None
    started: List[ServiceDefinition] = field(default_factory=list)
    compensated: Set[str] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def operation_id(self) -> str:
        return self.operation.operation_id

    def check_cancelled(self) -> None:
        """Cancellation checkpoint.

        Also honours a Cancelled status written to the store by another
        process, which has no handle on this run's cancel event.

        Raises:
            OperationCancelledError: If cancellation was requested
        """
        if not self.cancel_event.is_set() and self.store is not None:
            current = self.store.find_operation(self.operation_id)
            if current is not None and current.status == OperationStatus.CANCELLED:
                self.cancel_event.set()
        if self.cancel_event.is_set():
            raise OperationCancelledError(
                f"Operation {self.operation_id} was cancelled",
                context=ErrorContext(operation_id=self.operation_id)
            )


class StepHandle:
    """Lets a step body set the details recorded when the step completes."""

    def __init__(self, store: StateStore, operation_id: str, step_name: str, details: str):
        self.store = store
        self.operation_id = operation_id
        self.step_name = step_name
        self.details = details

    def progress(self, details: str) -> None:
        """Persist intermediate details while the step is still running."""
        self.details = details
        self.store.upsert_step(self.operation_id, self.step_name, StepStatus.RUNNING, details=details)


class BaseOrchestrator(ABC):
    """Drives one operation through its steps and rolls back on failure.

    Subclasses implement _execute() with the operation's steps and
    compensate() with the reverse action of each completed step. One
    instance may run several operations concurrently; per-run state lives
    in RunContext.
    """

    operation_type: OperationType

    def __init__(
        self,
        store: StateStore,
        registry: ServiceRegistry,
        settings: Optional[OrchestrationConfig] = None,
        validation_config: Optional[ValidationConfig] = None,
        validator: Optional[PreValidator] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize orchestrator.

        Args:
            store: Operation state store
            registry: Service registry
            settings: Worker, polling and dry-run settings
            validation_config: Inputs for the pre-validation battery
            validator: Pre-validator to use instead of building one
            clock: Monotonic clock for polling deadlines
            sleep: Wait function for polling; defaults to waiting on the cancel event
        """
        self.store = store
        self.registry = registry
        self.settings = settings or OrchestrationConfig()
        self.resolver = DependencyResolver(registry)
        self.validator = validator or PreValidator(store, self.resolver, validation_config)
        self.rollback_manager = RollbackManager(store)
        self.clock = clock
        self.sleep = sleep

    def run(
        self,
        operation_id: str,
        cancel_event: Optional[threading.Event] = None,
        cutoff_time: Optional[datetime] = None
    ) -> Operation:
        """Run an initiated operation to a terminal state.

        Args:
            operation_id: Operation created in the store with status Initiated
            cancel_event: Set to request cooperative cancellation
            cutoff_time: Transaction cutoff for End of Day runs

        Returns:
            The operation in its terminal state
        """
        operation = self.store.get_operation(operation_id)
        ctx = RunContext(
            operation=operation,
            cancel_event=cancel_event or threading.Event(),
            cutoff_time=cutoff_time,
            store=self.store,
        )
        log_extra = {'operation_id': operation_id}

        try:
            self.store.update_operation_status(operation_id, OperationStatus.RUNNING)
        except StateError as e:
            logger.warning(f"Operation not started: {e.message}", extra=log_extra)
            return self.store.get_operation(operation_id)
        logger.info(
            f"{self.operation_type.value} operation started for {operation.environment}"
            f"{' (dry run)' if operation.dry_run else ''}",
            extra=log_extra
        )

        try:
            ctx.check_cancelled()
            self._execute(ctx)
        except OperationCancelledError as e:
            self._finish_cancelled(ctx, e)
        except Exception as e:
            self._finish_failed(ctx, e)
        else:
            if self._settle(ctx, OperationStatus.COMPLETED):
                logger.info(f"{self.operation_type.value} operation completed", extra=log_extra)

        return self.store.get_operation(operation_id)

    @abstractmethod
    def _execute(self, ctx: RunContext) -> None:
        """Run the operation's steps; raise to fail the operation."""
        pass

    @abstractmethod
    def compensate(self, ctx: RunContext, step: OperationStep) -> Optional[str]:
        """Undo one completed step and describe what was done.

        Returns None when the step left nothing behind to undo.
        """
        pass

    @abstractmethod
    def expected_steps(self, *args) -> int:
        """Number of forward steps a successful run records."""
        pass

    @contextmanager
    def step(self, ctx: RunContext, step_name: str, details: str = "") -> Iterator[StepHandle]:
        """Record a step as Running, then Completed or Failed.

        Cancellation marks the step Skipped.
        """
        self.store.upsert_step(ctx.operation_id, step_name, StepStatus.RUNNING, details=details)
        handle = StepHandle(self.store, ctx.operation_id, step_name, details)
        try:
            yield handle
        except OperationCancelledError:
            self.store.upsert_step(
                ctx.operation_id, step_name, StepStatus.SKIPPED, error_message="Cancelled"
            )
            raise
        except Exception as e:
            self.store.upsert_step(
                ctx.operation_id, step_name, StepStatus.FAILED, error_message=str(e)
            )
            raise
        else:
            self.store.upsert_step(
                ctx.operation_id, step_name, StepStatus.COMPLETED, details=handle.details
            )

    def pre_validate(self, ctx: RunContext, services: List[ServiceDefinition]) -> PreValidationReport:
        """Run the pre-validation battery inside the Pre-Validation step.

        Raises:
            ValidationError: If a hard check fails and execution is not forced
        """
        with self.step(ctx, "Pre-Validation", "Running pre-validation checks") as step:
            report = self.validator.validate(self.operation_type, services)
            step.details = report.summary()

            failures = report.hard_failures
            if failures and not ctx.operation.force_execution:
                raise ValidationError(
                    f"Pre-validation failed: {'; '.join(f'{c.name}: {c.message}' for c in failures)}",
                    errors=[c.message for c in failures],
                    context=ErrorContext(operation_id=ctx.operation_id, step_name="Pre-Validation"),
                    suggestions=['Fix the failing checks or rerun with force execution']
                )
            if failures:
                step.details += "\nProceeding despite failures (forced)"
                logger.warning(
                    "Pre-validation failures overridden by force execution",
                    extra={'operation_id': ctx.operation_id}
                )
        return report

    def targeted_services(
        self,
        services_filter: List[str],
        operation_id: Optional[str] = None
    ) -> List[ServiceDefinition]:
        """Enabled services selected by a service-name filter; all when the filter is empty.

        Raises:
            ValidationError: If the filter names unknown or disabled services
        """
        enabled = self.registry.get_enabled_services()
        if not services_filter:
            return enabled

        by_name = {service.name: service for service in enabled}
        unknown = [name for name in services_filter if name not in by_name]
        if unknown:
            raise ValidationError(
                f"Unknown or disabled services in filter: {', '.join(unknown)}",
                errors=unknown,
                context=ErrorContext(operation_id=operation_id)
            )
        wanted = set(services_filter)
        return [service for service in enabled if service.name in wanted]

    def pause(self, ctx: RunContext, seconds: float) -> None:
        """Wait between polls, waking early on cancellation."""
        if self.sleep is not None:
            self.sleep(seconds)
        else:
            ctx.cancel_event.wait(seconds)

    def dry_run_pause(self, ctx: RunContext) -> None:
        if self.settings.dry_run_delay:
            self.pause(ctx, self.settings.dry_run_delay)

    def _finish_failed(self, ctx: RunContext, error: Exception) -> None:
        if isinstance(error, OrchestrationError):
            failure = error
        else:
            failure = error_handler.handle_exception(
                error,
                ErrorContext(operation_id=ctx.operation_id, operation_type=self.operation_type.value)
            )
        error_handler.log_error(failure)
        if not isinstance(failure, (ValidationError, DependencyError)):
            logger.debug("Failure traceback", exc_info=error, extra={'operation_id': ctx.operation_id})

        failed = self._settle(ctx, OperationStatus.FAILED, failure.message)
        result = self._rollback(ctx)
        if not result.is_success():
            logger.warning(
                f"Rollback left {len(result.failed_steps)} steps uncompensated: "
                f"{', '.join(result.failed_steps)}",
                extra={'operation_id': ctx.operation_id}
            )
        # Only a rollback that undid something earns RolledBack
        if failed and result.undo_count:
            self.store.update_operation_status(ctx.operation_id, OperationStatus.ROLLED_BACK)

    def _finish_cancelled(self, ctx: RunContext, error: OperationCancelledError) -> None:
        logger.warning(error.message, extra={'operation_id': ctx.operation_id})
        self._rollback(ctx)
        if self.store.get_operation(ctx.operation_id).status != OperationStatus.CANCELLED:
            self._settle(ctx, OperationStatus.CANCELLED, error.message)

    def _settle(
        self,
        ctx: RunContext,
        status: OperationStatus,
        error_details: Optional[str] = None
    ) -> bool:
        """Record a final status unless the operation was already finished elsewhere.

        Returns:
            True if the status was recorded
        """
        try:
            self.store.update_operation_status(ctx.operation_id, status, error_details=error_details)
        except StateError as e:
            logger.warning(
                f"Keeping recorded status instead of {status.value}: {e.message}",
                extra={'operation_id': ctx.operation_id}
            )
            return False
        return True

    def _rollback(self, ctx: RunContext) -> RollbackResult:
        return self.rollback_manager.rollback(
            ctx.operation_id, lambda step: self.compensate(ctx, step)
        )
