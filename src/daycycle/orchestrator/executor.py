"""Phase executor with concurrent service starts."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from daycycle.config.models import OperationType, ServiceDefinition
from daycycle.orchestrator.planner import ExecutionPhase
from daycycle.remote.base import ActionResult, ActionType, RemoteActionExecutor
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)


class ExecutionStatus(Enum):
    """Status of a service action."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ServiceActionResult:
    """Result of one action on one service."""

    service_name: str
    status: ExecutionStatus
    output: str = ""
    error: Optional[str] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


@dataclass
class PhaseExecutionResult:
    """Result of executing one phase."""

    phase_number: int
    parallel: bool
    results: Dict[str, ServiceActionResult] = field(default_factory=dict)
    started: List[str] = field(default_factory=list)  # in the order starts succeeded
    duration: float = 0.0  # seconds

    def get_failed(self) -> List[ServiceActionResult]:
        return [r for r in self.results.values() if r.is_failed()]

    def has_failures(self) -> bool:
        return any(r.is_failed() for r in self.results.values())


# (service, status, message) -> None
ProgressCallback = Callable[[ServiceDefinition, ExecutionStatus, Optional[str]], None]


class PhaseExecutor:
    """Starts the services of a phase and stops them again on failure."""

    def __init__(
        self,
        executor: RemoteActionExecutor,
        max_workers: int = 10,
        dry_run_delay: float = 0.1
    ):
        """Initialize phase executor.

        Args:
            executor: Remote action executor
            max_workers: Upper bound on concurrent starts within a phase
            dry_run_delay: Synthetic seconds per service in dry runs
        """
        self.executor = executor
        self.max_workers = max_workers
        self.dry_run_delay = dry_run_delay

    def execute_phase(
        self,
        phase: ExecutionPhase,
        operation_type: OperationType,
        progress_callback: Optional[ProgressCallback] = None,
        checkpoint: Optional[Callable[[], None]] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> PhaseExecutionResult:
        """Start every service in a phase.

        Parallel-eligible phases launch all members at once on a bounded
        pool and join them before returning. Other phases start members
        one at a time in phase order and stop at the first failure.

        Args:
            phase: Phase to execute
            operation_type: Selects each service's timeout
            progress_callback: Called when a service start begins and ends
            checkpoint: Called before each sequential start; raises to abort
            dry_run: Skip remote calls and wait dry_run_delay instead
            cancel_event: Interrupts dry-run delays

        Returns:
            PhaseExecutionResult with a result per attempted service
        """
        started_at = time.monotonic()
        result = PhaseExecutionResult(
            phase_number=phase.phase_number,
            parallel=phase.can_execute_in_parallel and phase.size() > 1,
        )
        lock = threading.Lock()

        def start(service: ServiceDefinition) -> ServiceActionResult:
            if progress_callback:
                progress_callback(service, ExecutionStatus.IN_PROGRESS, None)
            action_result = self._start_service(service, operation_type, dry_run, cancel_event)
            with lock:
                result.results[service.name] = action_result
                if action_result.is_success():
                    result.started.append(service.name)
            if progress_callback:
                progress_callback(
                    service,
                    action_result.status,
                    action_result.output if action_result.is_success() else action_result.error
                )
            return action_result

        if result.parallel:
            logger.info(
                f"Phase {phase.phase_number}: starting {phase.size()} services in parallel"
            )
            workers = min(self.max_workers, phase.size())
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix=f"phase-{phase.phase_number}"
            ) as pool:
                futures = [pool.submit(start, service) for service in phase.services]
                for future in as_completed(futures):
                    # start() reports failures through its result
                    future.result()
        else:
            logger.info(
                f"Phase {phase.phase_number}: starting {phase.size()} services sequentially"
            )
            for service in phase.services:
                if checkpoint:
                    checkpoint()
                if start(service).is_failed():
                    break

        result.duration = time.monotonic() - started_at
        return result

    def stop_services(
        self,
        services: Iterable[ServiceDefinition],
        operation_type: OperationType,
        dry_run: bool = False
    ) -> Set[str]:
        """Stop services one by one in the given order, continuing past failures.

        Returns:
            Names of services that were stopped
        """
        stopped = set()
        for service in services:
            if dry_run:
                stopped.add(service.name)
                continue
            action_result = self._run_action(service, ActionType.STOP, operation_type)
            if action_result.success:
                stopped.add(service.name)
                logger.info("Stopped service", extra={'service': service.name})
            else:
                logger.error(
                    f"Failed to stop service: {action_result.error}",
                    extra={'service': service.name}
                )
        return stopped

    def health_check(
        self,
        service: ServiceDefinition,
        operation_type: OperationType
    ) -> ActionResult:
        return self._run_action(service, ActionType.HEALTH_CHECK, operation_type)

    def _start_service(
        self,
        service: ServiceDefinition,
        operation_type: OperationType,
        dry_run: bool,
        cancel_event: Optional[threading.Event]
    ) -> ServiceActionResult:
        started_at = time.monotonic()

        if dry_run:
            if cancel_event is not None:
                cancel_event.wait(self.dry_run_delay)
            elif self.dry_run_delay:
                time.sleep(self.dry_run_delay)
            return ServiceActionResult(
                service_name=service.name,
                status=ExecutionStatus.SUCCESS,
                output=f"Dry run: would start {service.name} on {service.host}",
                duration=time.monotonic() - started_at,
            )

        action_result = self._run_action(service, ActionType.START, operation_type)
        return ServiceActionResult(
            service_name=service.name,
            status=ExecutionStatus.SUCCESS if action_result.success else ExecutionStatus.FAILED,
            output=action_result.output,
            error=action_result.error,
            duration=time.monotonic() - started_at,
        )

    def _run_action(
        self,
        service: ServiceDefinition,
        action: ActionType,
        operation_type: OperationType
    ) -> ActionResult:
        """Run an action, turning transport exceptions into a failed result."""
        try:
            return self.executor.execute(service, action, service.timeout_for(operation_type))
        except Exception as e:
            logger.exception(
                f"{action.value} raised {type(e).__name__}", extra={'service': service.name}
            )
            return ActionResult(success=False, error=f"{type(e).__name__}: {e}")
