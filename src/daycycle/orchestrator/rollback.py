"""Best-effort rollback of completed operation steps."""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from daycycle.state.models import OperationStep, StepStatus
from daycycle.state.store import StateStore
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)

ROLLBACK_PREFIX = "Rollback "

# Performs the compensating action for a step and describes it; None when
# the step left nothing behind to undo
Compensator = Callable[[OperationStep], Optional[str]]

NO_OP_DETAILS = "Nothing to compensate"


@dataclass
class RollbackResult:
    """Result of rolling back an operation."""

    attempted: List[str] = field(default_factory=list)  # step names, in attempt order
    succeeded: List[str] = field(default_factory=list)
    failed_steps: Dict[str, str] = field(default_factory=dict)  # step name -> error
    no_ops: List[str] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempted)

    @property
    def undo_count(self) -> int:
        """Attempts that had something to undo, whether or not they succeeded."""
        return len(self.attempted) - len(self.no_ops)

    def is_success(self) -> bool:
        return not self.failed_steps


class RollbackManager:
    """Compensates the completed steps of an operation, newest first."""

    def __init__(self, store: StateStore):
        self.store = store

    def rollback(self, operation_id: str, compensate: Compensator) -> RollbackResult:
        """Attempt one compensating action per completed step.

        Steps are visited in descending step_order and each attempt is
        recorded as a "Rollback <step>" step. A failing attempt is recorded
        and logged and the next step is still attempted.

        Args:
            operation_id: Operation to roll back
            compensate: Compensating action for a step; raises on failure and
                returns None when there was nothing to undo

        Returns:
            RollbackResult listing every attempt
        """
        completed = [
            step for step in self.store.get_steps(operation_id)
            if step.status == StepStatus.COMPLETED and not step.step_name.startswith(ROLLBACK_PREFIX)
        ]
        completed.sort(key=lambda step: step.step_order, reverse=True)

        result = RollbackResult()
        if not completed:
            logger.info("Nothing to roll back", extra={'operation_id': operation_id})
            return result

        logger.warning(
            f"Rolling back {len(completed)} completed steps",
            extra={'operation_id': operation_id}
        )

        for step in completed:
            rollback_step = f"{ROLLBACK_PREFIX}{step.step_name}"
            result.attempted.append(step.step_name)
            self.store.upsert_step(
                operation_id, rollback_step, StepStatus.RUNNING,
                details=f"Compensating {step.step_name}"
            )
            try:
                details = compensate(step)
            except Exception as e:
                # Rollback is best effort; record and carry on
                logger.error(
                    f"Compensation for {step.step_name} failed: {e}",
                    extra={'operation_id': operation_id, 'step': step.step_name}
                )
                result.failed_steps[step.step_name] = str(e)
                self.store.upsert_step(
                    operation_id, rollback_step, StepStatus.FAILED, error_message=str(e)
                )
            else:
                result.succeeded.append(step.step_name)
                if details is None:
                    result.no_ops.append(step.step_name)
                self.store.upsert_step(
                    operation_id, rollback_step, StepStatus.COMPLETED,
                    details=details if details is not None else NO_OP_DETAILS
                )

        logger.info(
            f"Rollback finished: {len(result.succeeded)}/{result.attempt_count} compensations succeeded",
            extra={'operation_id': operation_id}
        )
        return result
