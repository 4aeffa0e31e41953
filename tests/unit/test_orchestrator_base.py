"""Tests for the orchestrator base: abstract surface and failure outcome."""

import pytest

from daycycle.config.models import OperationType
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.base import BaseOrchestrator
from daycycle.state.models import Operation, OperationStatus, StepStatus
from daycycle.utils.errors import ExecutionError


class ScriptedOrchestrator(BaseOrchestrator):
    """Completes the given steps, then fails; compensation replies are scripted."""

    operation_type = OperationType.SOD

    def __init__(self, store, steps, undo):
        super().__init__(store, ServiceRegistry([]))
        self.steps = steps
        self.undo = undo

    def _execute(self, ctx):
        for name in self.steps:
            with self.step(ctx, name):
                pass
        with self.step(ctx, "Boom"):
            raise ExecutionError("boom")

    def compensate(self, ctx, step):
        return self.undo.get(step.step_name)

    def expected_steps(self, *args):
        return len(self.steps) + 1


def run_scripted(store, steps, undo):
    operation = store.create_operation(
        Operation(operation_type=OperationType.SOD, environment="test", initiated_by="tester")
    )
    return ScriptedOrchestrator(store, steps, undo).run(operation.operation_id)


class TestAbstractSurface:
    def test_expected_steps_must_be_implemented(self, store):
        class NoStepCount(BaseOrchestrator):
            operation_type = OperationType.EOD

            def _execute(self, ctx):
                pass

            def compensate(self, ctx, step):
                return None

        with pytest.raises(TypeError, match="expected_steps"):
            NoStepCount(store, ServiceRegistry([]))


class TestFailureOutcome:
    def test_only_no_op_compensations_leave_operation_failed(self, store):
        operation = run_scripted(store, ["Check A", "Check B"], undo={})

        assert operation.status == OperationStatus.FAILED
        assert operation.error_details == "boom"
        for name in ("Check A", "Check B"):
            rollback = store.get_step(operation.operation_id, f"Rollback {name}")
            assert rollback.status == StepStatus.COMPLETED
            assert rollback.details == "Nothing to compensate"

    def test_one_real_compensation_rolls_back(self, store):
        operation = run_scripted(
            store, ["Check A", "Start B"], undo={"Start B": "Stopped B"}
        )

        assert operation.status == OperationStatus.ROLLED_BACK
        assert store.get_step(operation.operation_id, "Rollback Start B").details == "Stopped B"

    def test_nothing_completed_stays_failed(self, store):
        operation = run_scripted(store, [], undo={})

        assert operation.status == OperationStatus.FAILED
        assert [s.step_name for s in store.get_steps(operation.operation_id)] == ["Boom"]
