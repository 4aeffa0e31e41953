"""Recurring SOD/EOD triggers driven by cron expressions."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple

from daycycle.config.models import OperationType
from daycycle.orchestrator.service import OperationService
from daycycle.scheduler.cron import next_execution_time, validate_cron_expression, validate_time_zone
from daycycle.state.models import (
    InitiationMethod,
    OperationRequest,
    ScheduledDefinition,
    ScheduleRequest,
    ScheduleResult,
    ScheduleStatus,
    ScheduleUpdate,
    utcnow,
)
from daycycle.state.store import StateStore
from daycycle.utils.errors import ErrorContext, SchedulingError, error_handler
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_SCHEDULER = "SYSTEM_SCHEDULER"


@dataclass
class TickResult:
    """What one scheduler tick did."""

    checked_at: datetime
    started: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def fired(self) -> int:
        return len(self.started) + len(self.failed)


class OperationScheduler:
    """Stores scheduled definitions and fires the due ones.

    Definitions live in the state store and are reloaded on every tick, so
    changes made by other processes are picked up without a restart.
    """

    def __init__(self, store: StateStore, service: OperationService):
        """Initialize scheduler.

        Args:
            store: State store holding the definitions
            service: Operation service used to start due operations
        """
        self.store = store
        self.service = service
        self._in_flight: Set[str] = set()
        self._guard = threading.Lock()

    def schedule_sod(self, request: ScheduleRequest, scheduled_by: str) -> ScheduleResult:
        return self._schedule(OperationType.SOD, request, scheduled_by)

    def schedule_eod(self, request: ScheduleRequest, scheduled_by: str) -> ScheduleResult:
        return self._schedule(OperationType.EOD, request, scheduled_by)

    def _schedule(
        self,
        operation_type: OperationType,
        request: ScheduleRequest,
        scheduled_by: str
    ) -> ScheduleResult:
        # Validate everything before the store is touched
        expression = validate_cron_expression(request.cron_expression)
        validate_time_zone(request.time_zone)
        next_time = next_execution_time(expression, request.time_zone)

        definition = ScheduledDefinition(
            operation_type=operation_type,
            environment=request.environment,
            cron_expression=expression,
            time_zone=request.time_zone,
            services_filter=request.services_filter,
            dry_run=request.dry_run,
            is_enabled=request.is_enabled,
            comments=request.comments,
            scheduled_by=scheduled_by,
            next_execution_time=next_time,
            status=ScheduleStatus.ACTIVE if request.is_enabled else ScheduleStatus.PAUSED,
        )
        self.store.add_schedule(definition)

        logger.info(
            f"{operation_type.value} scheduled for {request.environment} by {scheduled_by}: "
            f"'{expression}' ({request.time_zone}), next at {next_time.isoformat()}",
            extra={'schedule_id': definition.schedule_id}
        )
        return ScheduleResult.from_definition(
            definition, f"{operation_type.value} operation scheduled"
        )

    def update_schedule(
        self,
        schedule_id: str,
        update: ScheduleUpdate,
        updated_by: str
    ) -> ScheduleResult:
        """Apply a partial update to a definition.

        Raises:
            OperationNotFoundError: If the definition does not exist
            SchedulingError: If the definition is cancelled or the new
                expression or zone is invalid; nothing is stored in that case
        """
        changes = update.model_dump(exclude_none=True)

        def apply(definition: ScheduledDefinition) -> bool:
            if definition.status == ScheduleStatus.CANCELLED:
                raise SchedulingError(
                    f"Schedule {schedule_id} is cancelled and cannot be updated",
                    context=ErrorContext(additional_info={'schedule_id': schedule_id})
                )

            was_enabled = definition.is_enabled
            for name, value in changes.items():
                setattr(definition, name, value)

            timing_changed = 'cron_expression' in changes or 'time_zone' in changes
            if timing_changed:
                definition.cron_expression = validate_cron_expression(definition.cron_expression)
                validate_time_zone(definition.time_zone)

            if update.is_enabled is not None:
                definition.status = ScheduleStatus.ACTIVE if update.is_enabled else ScheduleStatus.PAUSED

            if timing_changed or (update.is_enabled and not was_enabled):
                definition.next_execution_time = next_execution_time(
                    definition.cron_expression, definition.time_zone
                )
            return True

        updated = self.store.modify_schedule(schedule_id, apply)
        logger.info(
            f"Schedule updated by {updated_by}: {', '.join(sorted(changes)) or 'no changes'}",
            extra={'schedule_id': schedule_id}
        )
        return ScheduleResult.from_definition(updated, "Schedule updated")

    def cancel_schedule(self, schedule_id: str, cancelled_by: str) -> ScheduleResult:
        """Disable a definition permanently; it stays in the store as Cancelled."""
        def cancel(definition: ScheduledDefinition) -> bool:
            definition.is_enabled = False
            definition.status = ScheduleStatus.CANCELLED
            return True

        definition = self.store.modify_schedule(schedule_id, cancel)
        logger.info(f"Schedule cancelled by {cancelled_by}", extra={'schedule_id': schedule_id})
        return ScheduleResult.from_definition(definition, f"Schedule cancelled by {cancelled_by}")

    def get_schedule(self, schedule_id: str) -> ScheduledDefinition:
        return self.store.get_schedule(schedule_id)

    def list_schedules(self, environment: Optional[str] = None) -> List[ScheduledDefinition]:
        return self.store.list_schedules(environment)

    @staticmethod
    def is_due(definition: ScheduledDefinition, now: datetime) -> bool:
        return (
            definition.is_enabled
            and definition.status == ScheduleStatus.ACTIVE
            and definition.next_execution_time <= now
        )

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Fire every due definition once.

        A definition that fails to start is marked Failed; the others are
        not affected.
        """
        now = now or utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        result = TickResult(checked_at=now)

        for definition in self.store.list_schedules():
            if not self.is_due(definition, now):
                continue

            schedule_id = definition.schedule_id
            with self._guard:
                if schedule_id in self._in_flight:
                    result.skipped.append(schedule_id)
                    continue
                self._in_flight.add(schedule_id)

            try:
                self._fire(schedule_id, now, result)
            finally:
                with self._guard:
                    self._in_flight.discard(schedule_id)

        if result.fired:
            logger.info(
                f"Scheduler tick: {len(result.started)} started, {len(result.failed)} failed"
            )
        return result

    def _fire(self, schedule_id: str, now: datetime, result: TickResult) -> None:
        """Claim a due firing, start the operation and record the outcome.

        Claiming and recording are separate read-modify-writes of the latest
        stored definition, so edits made meanwhile by other callers survive.
        """
        def claim(definition: ScheduledDefinition) -> bool:
            if not self.is_due(definition, now):
                return False
            definition.execution_count += 1
            definition.last_execution_time = now
            definition.next_execution_time = next_execution_time(
                definition.cron_expression, definition.time_zone, now
            )
            return True

        log_extra = {'schedule_id': schedule_id}
        try:
            definition = self.store.modify_schedule(schedule_id, claim)
            if definition is None:
                return
            started = self.service.start(
                definition.operation_type,
                OperationRequest(
                    environment=definition.environment,
                    services_filter=definition.services_filter,
                    dry_run=definition.dry_run,
                    comments=definition.comments,
                ),
                SYSTEM_SCHEDULER,
                InitiationMethod.SCHEDULED,
            )
        except Exception as e:
            # One broken definition must not stop the others
            failure = error_handler.handle_exception(
                e, ErrorContext(additional_info=log_extra)
            )
            self.store.modify_schedule(schedule_id, self._record_failure)
            result.failed.append((schedule_id, failure.message))
            logger.error(f"Scheduled operation failed to start: {failure.message}", extra=log_extra)
            return

        self.store.modify_schedule(schedule_id, self._record_success)
        result.started.append((schedule_id, started.operation_id))
        logger.info(
            f"Scheduled {definition.operation_type.value} started, "
            f"next at {definition.next_execution_time.isoformat()}",
            extra={**log_extra, 'operation_id': started.operation_id}
        )

    @staticmethod
    def _record_success(definition: ScheduledDefinition) -> bool:
        definition.success_count += 1
        return True

    @staticmethod
    def _record_failure(definition: ScheduledDefinition) -> bool:
        definition.failure_count += 1
        if definition.status != ScheduleStatus.CANCELLED:
            definition.status = ScheduleStatus.FAILED
        return True

    def run(self, stop_event: threading.Event, interval: float = 60) -> None:
        """Tick until the stop event is set."""
        logger.info(f"Scheduler running, checking every {interval:.0f}s")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            stop_event.wait(interval)
        logger.info("Scheduler stopped")
