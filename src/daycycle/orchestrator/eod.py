"""End of Day orchestrator."""

from datetime import datetime, timezone
from typing import Optional

from daycycle.config.models import OperationType, OrchestrationConfig, ValidationConfig
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.base import BaseOrchestrator, RunContext, StepHandle
from daycycle.orchestrator.validation import PreValidator
from daycycle.remote.banking import EOD_PHASES, BankingOperations
from daycycle.state.models import OperationStep
from daycycle.state.store import StateStore
from daycycle.utils.errors import DependencyError, ErrorContext, OperationTimeoutError
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)

CUTOFF_STEP = "Transaction Cutoff"
IN_FLIGHT_STEP = "In-Flight Transaction Wait"
POSTING_STEP = "Daily Processing"

# Pre-Validation, cutoff, in-flight wait, then each phase and its tasks
EOD_STEP_COUNT = 3 + sum(1 + len(tasks) for tasks in EOD_PHASES.values())


class EODOrchestrator(BaseOrchestrator):
    """Closes the business day through the banking backend.

    Steps: Pre-Validation, Transaction Cutoff, In-Flight Transaction Wait,
    then Daily Processing, Reconciliation and Reporting and System Cleanup,
    each a parent step over its sequential tasks.
    """

    operation_type = OperationType.EOD

    def __init__(
        self,
        store: StateStore,
        registry: ServiceRegistry,
        banking: BankingOperations,
        settings: Optional[OrchestrationConfig] = None,
        validation_config: Optional[ValidationConfig] = None,
        validator: Optional[PreValidator] = None,
        **kwargs
    ):
        super().__init__(
            store, registry, settings=settings, validation_config=validation_config,
            validator=validator, **kwargs
        )
        self.banking = banking

    def expected_steps(self, *args) -> int:
        return EOD_STEP_COUNT

    def _execute(self, ctx: RunContext) -> None:
        operation = ctx.operation
        environment = operation.environment

        report = self.pre_validate(ctx, self.registry.get_services())
        if report.dependency_errors:
            # Never overridden by force execution
            raise DependencyError(
                "EOD dependency check failed: " + "; ".join(report.dependency_errors),
                context=ErrorContext(operation_id=ctx.operation_id, step_name="Pre-Validation")
            )

        ctx.check_cancelled()
        with self.step(ctx, CUTOFF_STEP, "Halting transaction intake") as step:
            cutoff = ctx.cutoff_time or datetime.now(timezone.utc)
            if operation.dry_run:
                self.dry_run_pause(ctx)
                step.details = f"Dry run: would halt intake and process pending up to {cutoff.isoformat()}"
            else:
                self.banking.halt_transaction_intake(environment)
                processed = self.banking.process_pending_transactions(environment, cutoff)
                step.details = f"Intake halted; {processed} pending transactions processed up to {cutoff.isoformat()}"

        ctx.check_cancelled()
        with self.step(ctx, IN_FLIGHT_STEP, "Waiting for in-flight transactions") as step:
            if operation.dry_run:
                self.dry_run_pause(ctx)
                step.details = "Dry run: in-flight wait skipped"
            else:
                checks = self.wait_for_in_flight(ctx, step)
                step.details = f"All in-flight transactions completed after {checks} checks"

        for phase_name, tasks in EOD_PHASES.items():
            ctx.check_cancelled()
            with self.step(ctx, phase_name, f"Running {len(tasks)} tasks") as phase_step:
                for task in tasks:
                    ctx.check_cancelled()
                    with self.step(ctx, task, f"Running {task}") as task_step:
                        if operation.dry_run:
                            self.dry_run_pause(ctx)
                            task_step.details = f"Dry run: would run {task}"
                        else:
                            task_step.details = self.banking.run_task(environment, task)
                phase_step.details = f"{len(tasks)} tasks completed"

    def wait_for_in_flight(self, ctx: RunContext, step: StepHandle) -> int:
        """Poll the pending count until it reaches zero.

        Returns:
            Number of checks made

        Raises:
            OperationTimeoutError: If transactions are still pending after the ceiling
            OperationCancelledError: If cancellation is requested while waiting
        """
        interval = self.settings.in_flight_poll_interval
        ceiling = self.settings.in_flight_timeout
        deadline = self.clock() + ceiling
        checks = 0

        while True:
            ctx.check_cancelled()
            pending = self.banking.get_pending_transaction_count(ctx.operation.environment)
            checks += 1
            if pending == 0:
                return checks

            if self.clock() >= deadline:
                raise OperationTimeoutError(
                    f"{pending} transactions still in flight after {ceiling:.0f}s",
                    context=ErrorContext(operation_id=ctx.operation_id, step_name=IN_FLIGHT_STEP),
                    suggestions=['Investigate stuck transactions before rerunning EOD']
                )

            step.progress(f"Waiting for {pending} in-flight transactions (check {checks})")
            logger.info(
                f"{pending} transactions in flight, checking again in {interval:.0f}s",
                extra={'operation_id': ctx.operation_id, 'step': IN_FLIGHT_STEP}
            )
            self.pause(ctx, interval)

    def compensate(self, ctx: RunContext, step: OperationStep) -> Optional[str]:
        environment = ctx.operation.environment
        name = step.step_name

        if name == "Pre-Validation":
            return None
        if ctx.operation.dry_run:
            return f"Dry run: would compensate {name}"

        if name == CUTOFF_STEP:
            self.banking.resume_transaction_intake(environment)
            return "Transaction intake resumed"
        if name == POSTING_STEP:
            self.banking.revert_postings(environment)
            return "Daily postings reverted"

        self.banking.compensate(environment, name)
        return f"Compensated {name}"
