"""Start of Day orchestrator."""

from typing import List, Optional

from daycycle.config.models import OperationType, OrchestrationConfig, ServiceDefinition, ValidationConfig
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.base import BaseOrchestrator, RunContext
from daycycle.orchestrator.executor import ExecutionStatus, PhaseExecutor
from daycycle.orchestrator.planner import ExecutionPlanner, ExecutionPhase, ServiceExecutionPlan
from daycycle.orchestrator.validation import PreValidator
from daycycle.remote.base import RemoteActionExecutor
from daycycle.state.models import OperationStep, StepStatus
from daycycle.state.store import StateStore
from daycycle.utils.errors import DependencyError, ErrorContext, ExecutionError
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)

START_PREFIX = "Start "

# Pre-Validation, Dependency Resolution and Post-Validation
FIXED_SOD_STEPS = 3


class SODOrchestrator(BaseOrchestrator):
    """Starts services phase by phase in dependency order.

    Steps: Pre-Validation, Dependency Resolution, one "Phase N" step per
    phase with a "Start <service>" step per service, then Post-Validation.
    """

    operation_type = OperationType.SOD

    def __init__(
        self,
        store: StateStore,
        registry: ServiceRegistry,
        executor: RemoteActionExecutor,
        settings: Optional[OrchestrationConfig] = None,
        validation_config: Optional[ValidationConfig] = None,
        validator: Optional[PreValidator] = None,
        **kwargs
    ):
        super().__init__(
            store, registry, settings=settings, validation_config=validation_config,
            validator=validator, **kwargs
        )
        self.executor = executor
        self.planner = ExecutionPlanner()
        self.phase_executor = PhaseExecutor(
            executor,
            max_workers=self.settings.max_workers,
            dry_run_delay=self.settings.dry_run_delay,
        )

    def create_plan(self, services_filter: Optional[List[str]] = None) -> ServiceExecutionPlan:
        """Resolve dependencies and plan phases without running anything.

        Raises:
            DependencyError: If dependencies are missing, disabled or cyclic
            ValidationError: If the filter names unknown services
        """
        graph = self.resolver.resolve_service_dependencies(self.operation_type)
        targeted = self.targeted_services(services_filter or [])
        return self.planner.create_execution_plan(graph, targeted)

    def expected_steps(self, plan: ServiceExecutionPlan) -> int:
        return FIXED_SOD_STEPS + len(plan.phases) + plan.total_services

    def _execute(self, ctx: RunContext) -> None:
        operation = ctx.operation
        all_services = self.registry.get_services()

        self.pre_validate(ctx, all_services)

        with self.step(ctx, "Dependency Resolution", "Resolving service dependencies") as step:
            graph = self.resolver.resolve_service_dependencies(self.operation_type, all_services)
            targeted = self.targeted_services(operation.services_filter, ctx.operation_id)
            plan = self.planner.create_execution_plan(graph, targeted)
            if plan.unplaced_services:
                raise DependencyError(
                    f"Could not place services within {self.planner.MAX_PHASES} phases: "
                    f"{', '.join(plan.unplaced_services)}",
                    context=ErrorContext(operation_id=ctx.operation_id)
                )
            self.store.set_expected_steps(ctx.operation_id, self.expected_steps(plan))
            step.details = (
                f"{len(plan.phases)} phases, {plan.total_services} services "
                f"({plan.critical_services} critical), max depth {graph.max_depth}, "
                f"estimated {plan.estimated_minutes} min"
            )

        for phase in plan.phases:
            ctx.check_cancelled()
            self._execute_phase(ctx, phase)

        with self.step(ctx, "Post-Validation", "Health-checking started services") as step:
            step.details = self._post_validate(ctx)

    def _execute_phase(self, ctx: RunContext, phase: ExecutionPhase) -> None:
        operation = ctx.operation
        mode = "parallel" if phase.can_execute_in_parallel else "sequential"

        with self.step(
            ctx, f"Phase {phase.phase_number}",
            f"Starting {', '.join(phase.service_names)} ({mode})"
        ) as step:

            def on_progress(service: ServiceDefinition, status: ExecutionStatus, message: Optional[str]):
                step_name = f"{START_PREFIX}{service.name}"
                if status == ExecutionStatus.IN_PROGRESS:
                    self.store.upsert_step(
                        ctx.operation_id, step_name, StepStatus.RUNNING,
                        details=f"Starting {service.name} on {service.host}"
                    )
                elif status == ExecutionStatus.SUCCESS:
                    with ctx.lock:
                        ctx.started.append(service)
                    self.store.upsert_step(
                        ctx.operation_id, step_name, StepStatus.COMPLETED, details=message or ""
                    )
                else:
                    self.store.upsert_step(
                        ctx.operation_id, step_name, StepStatus.FAILED,
                        error_message=message or "Start failed"
                    )

            result = self.phase_executor.execute_phase(
                phase,
                self.operation_type,
                progress_callback=on_progress,
                checkpoint=ctx.check_cancelled,
                dry_run=operation.dry_run,
                cancel_event=ctx.cancel_event,
            )

            if result.has_failures():
                failed = result.get_failed()
                stopped = self.phase_executor.stop_services(
                    reversed(ctx.started), self.operation_type, dry_run=operation.dry_run
                )
                ctx.compensated |= stopped
                raise ExecutionError(
                    f"Phase {phase.phase_number} failed: " + "; ".join(
                        f"{r.service_name}: {r.error}" for r in failed
                    ),
                    context=ErrorContext(
                        operation_id=ctx.operation_id,
                        step_name=f"Phase {phase.phase_number}",
                        service_name=failed[0].service_name,
                        action="Start",
                    ),
                    suggestions=[f"Check the logs of {r.service_name} on its host" for r in failed]
                )

            step.details = (
                f"Started {len(result.started)} services ({mode}) in {result.duration:.1f}s"
            )

    def _post_validate(self, ctx: RunContext) -> str:
        if ctx.operation.dry_run:
            return f"Dry run: skipped health checks for {len(ctx.started)} services"

        warnings = []
        for service in ctx.started:
            result = self.phase_executor.health_check(service, self.operation_type)
            if not result.success:
                warnings.append(f"warning: {service.name} health check failed: {result.error}")
                logger.warning(
                    f"Post-validation health check failed: {result.error}",
                    extra={'operation_id': ctx.operation_id, 'service': service.name}
                )

        healthy = len(ctx.started) - len(warnings)
        return "\n".join([f"{healthy}/{len(ctx.started)} services healthy"] + warnings)

    def compensate(self, ctx: RunContext, step: OperationStep) -> Optional[str]:
        if not step.step_name.startswith(START_PREFIX):
            return None

        service_name = step.step_name[len(START_PREFIX):]
        if service_name in ctx.compensated:
            return f"{service_name} already stopped"
        if ctx.operation.dry_run:
            return f"Dry run: would stop {service_name}"

        service = self.registry.get_service_by_name(service_name)
        if service is None:
            raise ExecutionError(f"Service {service_name} is no longer registered")

        stopped = self.phase_executor.stop_services([service], self.operation_type)
        if service_name not in stopped:
            raise ExecutionError(
                f"Failed to stop {service_name}",
                context=ErrorContext(operation_id=ctx.operation_id, service_name=service_name)
            )
        ctx.compensated.add(service_name)
        return f"Stopped {service_name}"
