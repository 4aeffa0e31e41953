"""Tests for the state store."""

import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from daycycle.config.models import OperationType
from daycycle.orchestrator.base import RunContext
from daycycle.orchestrator.service import OperationService
from daycycle.scheduler import OperationScheduler
from daycycle.state.models import (
    Operation,
    OperationResult,
    OperationStatus,
    ScheduledDefinition,
    StepStatus,
    utcnow,
)
from daycycle.state.store import StateLockError, StateStore
from daycycle.utils.errors import OperationCancelledError, OperationNotFoundError, StateError


def new_operation(store, **kwargs):
    kwargs.setdefault("operation_type", OperationType.SOD)
    kwargs.setdefault("environment", "test")
    kwargs.setdefault("initiated_by", "tester")
    return store.create_operation(Operation(**kwargs))


class TestOperations:
    def test_create_and_get(self, store):
        operation = new_operation(store)

        loaded = store.get_operation(operation.operation_id)

        assert loaded.status == OperationStatus.INITIATED
        assert loaded.environment == "test"

    def test_unknown_operation(self, store):
        assert store.find_operation("missing") is None
        with pytest.raises(OperationNotFoundError):
            store.get_operation("missing")

    def test_records_are_copies(self, store):
        operation = new_operation(store)

        loaded = store.get_operation(operation.operation_id)
        loaded.status = OperationStatus.COMPLETED

        assert store.get_operation(operation.operation_id).status == OperationStatus.INITIATED

    def test_terminal_status_sets_end_time(self, store):
        operation = new_operation(store)
        store.update_operation_status(operation.operation_id, OperationStatus.RUNNING)

        completed = store.update_operation_status(operation.operation_id, OperationStatus.COMPLETED)

        assert completed.end_time is not None

    @pytest.mark.parametrize("terminal", [
        OperationStatus.COMPLETED,
        OperationStatus.CANCELLED,
        OperationStatus.ROLLED_BACK,
    ])
    def test_terminal_states_are_final(self, store, terminal):
        operation = new_operation(store)
        if terminal == OperationStatus.ROLLED_BACK:
            store.update_operation_status(operation.operation_id, OperationStatus.FAILED)
        store.update_operation_status(operation.operation_id, terminal)

        with pytest.raises(StateError):
            store.update_operation_status(operation.operation_id, OperationStatus.RUNNING)

    def test_failed_may_become_rolled_back_only(self, store):
        operation = new_operation(store)
        store.update_operation_status(operation.operation_id, OperationStatus.FAILED, "boom")

        with pytest.raises(StateError):
            store.update_operation_status(operation.operation_id, OperationStatus.COMPLETED)
        rolled_back = store.update_operation_status(operation.operation_id, OperationStatus.ROLLED_BACK)

        assert rolled_back.status == OperationStatus.ROLLED_BACK

    def test_first_error_details_win(self, store):
        operation = new_operation(store)
        store.update_operation_status(operation.operation_id, OperationStatus.FAILED, "first")

        store.update_operation_status(operation.operation_id, OperationStatus.ROLLED_BACK, "second")

        assert store.get_operation(operation.operation_id).error_details == "first"

    def test_list_operations_newest_first_with_filters(self, store):
        now = utcnow()
        for i in range(5):
            new_operation(
                store,
                operation_type=OperationType.SOD if i % 2 == 0 else OperationType.EOD,
                start_time=now + timedelta(minutes=i),
            )

        page, total = store.list_operations(page=1, page_size=2)
        sod_only, sod_total = store.list_operations(operation_type=OperationType.SOD)
        second_page, _ = store.list_operations(page=3, page_size=2)

        assert total == 5
        assert page[0].start_time > page[1].start_time
        assert sod_total == 3
        assert all(op.operation_type == OperationType.SOD for op in sod_only)
        assert len(second_page) == 1

    def test_set_expected_steps(self, store):
        operation = new_operation(store)

        store.set_expected_steps(operation.operation_id, 11)

        assert store.get_operation(operation.operation_id).expected_steps == 11


class TestSteps:
    def test_new_steps_take_next_order(self, store):
        operation = new_operation(store)

        store.upsert_step(operation.operation_id, "Pre-Validation", StepStatus.RUNNING)
        store.upsert_step(operation.operation_id, "Dependency Resolution", StepStatus.RUNNING)

        steps = store.get_steps(operation.operation_id)
        assert [(s.step_name, s.step_order) for s in steps] == [
            ("Pre-Validation", 1), ("Dependency Resolution", 2)
        ]

    def test_upsert_updates_existing_step_in_place(self, store):
        operation = new_operation(store)
        store.upsert_step(operation.operation_id, "Pre-Validation", StepStatus.RUNNING, details="checking")

        step = store.upsert_step(operation.operation_id, "Pre-Validation", StepStatus.COMPLETED)

        assert step.step_order == 1
        assert step.status == StepStatus.COMPLETED
        assert step.details == "checking"
        assert step.end_time is not None
        assert len(store.get_steps(operation.operation_id)) == 1

    def test_failed_step_keeps_error(self, store):
        operation = new_operation(store)

        store.upsert_step(operation.operation_id, "Start db", StepStatus.FAILED, error_message="refused")

        assert store.get_step(operation.operation_id, "Start db").error_message == "refused"
        assert store.get_step(operation.operation_id, "Start web") is None

    def test_step_for_unknown_operation(self, store):
        with pytest.raises(OperationNotFoundError):
            store.upsert_step("missing", "Pre-Validation", StepStatus.RUNNING)


class TestSchedules:
    def definition(self, minutes, environment="test"):
        return ScheduledDefinition(
            operation_type=OperationType.EOD,
            environment=environment,
            cron_expression="0 18 * * *",
            scheduled_by="tester",
            next_execution_time=utcnow() + timedelta(minutes=minutes),
        )

    def test_list_orders_by_next_execution(self, store):
        later = store.add_schedule(self.definition(30))
        sooner = store.add_schedule(self.definition(5))
        store.add_schedule(self.definition(1, environment="other"))

        listed = store.list_schedules("test")

        assert [d.schedule_id for d in listed] == [sooner.schedule_id, later.schedule_id]

    def test_save_requires_existing_definition(self, store):
        with pytest.raises(OperationNotFoundError):
            store.save_schedule(self.definition(5))

    def test_duplicate_add_rejected(self, store):
        definition = store.add_schedule(self.definition(5))

        with pytest.raises(StateError):
            store.add_schedule(definition)


class TestPersistence:
    def test_state_survives_reopen(self, tmp_path):
        path = tmp_path / "state" / "state.json"
        first = StateStore(str(path))
        operation = new_operation(first)
        first.upsert_step(operation.operation_id, "Pre-Validation", StepStatus.COMPLETED)

        reopened = StateStore(str(path))

        assert reopened.get_operation(operation.operation_id).operation_id == operation.operation_id
        assert reopened.get_steps(operation.operation_id)[0].status == StepStatus.COMPLETED
        assert not path.with_suffix(".tmp").exists()

    def test_corrupt_state_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")

        with pytest.raises(StateError, match="Failed to parse"):
            StateStore(str(path))

    def test_ping(self, tmp_path):
        assert StateStore().ping()
        assert StateStore(str(tmp_path / "nested" / "state.json")).ping()


class TestSharedStateFile:
    """Two stores on one path behave like two daycycle processes."""

    @pytest.fixture
    def stores(self, tmp_path):
        path = str(tmp_path / "state.json")
        return StateStore(path), StateStore(path)

    def due_definition(self):
        return ScheduledDefinition(
            operation_type=OperationType.EOD,
            environment="test",
            cron_expression="0 18 * * *",
            scheduled_by="tester",
            next_execution_time=utcnow() - timedelta(minutes=1),
        )

    def test_schedule_added_elsewhere_is_fired_and_kept(self, stores):
        cli, daemon = stores
        service = Mock(spec=OperationService)
        service.start.return_value = OperationResult(
            operation_id="op-1",
            status=OperationStatus.INITIATED,
            message="initiated",
            start_time=utcnow(),
        )
        scheduler = OperationScheduler(daemon, service)
        # The daemon has already written state of its own
        new_operation(daemon)

        definition = cli.add_schedule(self.due_definition())
        tick = scheduler.tick()
        new_operation(daemon)

        assert tick.started == [(definition.schedule_id, "op-1")]
        reopened = StateStore(daemon.state_path)
        stored = reopened.get_schedule(definition.schedule_id)
        assert stored.execution_count == 1
        assert stored.success_count == 1
        assert reopened.list_operations()[1] == 2
        assert cli.get_schedule(definition.schedule_id).success_count == 1

    def test_cancel_written_elsewhere_is_not_overwritten(self, stores):
        runner, cli = stores
        operation = new_operation(runner)
        runner.update_operation_status(operation.operation_id, OperationStatus.RUNNING)

        cli.update_operation_status(operation.operation_id, OperationStatus.CANCELLED)
        runner.upsert_step(operation.operation_id, "Phase 1", StepStatus.RUNNING)

        assert StateStore(runner.state_path).get_operation(
            operation.operation_id
        ).status == OperationStatus.CANCELLED
        with pytest.raises(StateError):
            runner.update_operation_status(operation.operation_id, OperationStatus.COMPLETED)

    def test_cancel_written_elsewhere_stops_run_at_checkpoint(self, stores):
        runner, cli = stores
        operation = new_operation(runner)
        ctx = RunContext(operation, threading.Event(), store=runner)
        ctx.check_cancelled()

        cli.update_operation_status(operation.operation_id, OperationStatus.CANCELLED)

        with pytest.raises(OperationCancelledError):
            ctx.check_cancelled()
        assert ctx.cancel_event.is_set()

    def test_schedule_edits_from_both_sides_survive(self, stores):
        first, second = stores
        definition = first.add_schedule(self.due_definition())

        def disable(current):
            current.is_enabled = False
            return True

        def count(current):
            current.failure_count += 1
            return True

        first.modify_schedule(definition.schedule_id, disable)
        second.modify_schedule(definition.schedule_id, count)

        stored = StateStore(first.state_path).get_schedule(definition.schedule_id)
        assert stored.is_enabled is False
        assert stored.failure_count == 1

    def test_abandoned_change_leaves_definition_alone(self, stores):
        first, second = stores
        definition = first.add_schedule(self.due_definition())

        def abandon(current):
            current.comments = "half done"
            return False

        assert second.modify_schedule(definition.schedule_id, abandon) is None
        assert first.get_schedule(definition.schedule_id).comments is None

    def test_modify_unknown_schedule(self, store):
        with pytest.raises(OperationNotFoundError):
            store.modify_schedule("missing", lambda current: True)

    def test_held_file_lock_times_out(self, tmp_path):
        path = tmp_path / "state.json"
        holder = StateStore(str(path))
        waiter = StateStore(str(path), lock_timeout=0.1)

        with holder._file_lock():
            with pytest.raises(StateLockError):
                new_operation(waiter)
        assert waiter.list_operations()[1] == 0
