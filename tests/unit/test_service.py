"""Tests for the operation service."""

import threading

import pytest

from daycycle.config.models import OperationType
from daycycle.config.parser import Config, ServiceRegistry
from daycycle.orchestrator.eod import EOD_STEP_COUNT, EODOrchestrator
from daycycle.orchestrator.service import OperationService
from daycycle.orchestrator.sod import SODOrchestrator
from daycycle.remote.banking import SimulatedBankingOperations
from daycycle.remote.simulated import SimulatedActionExecutor
from daycycle.state.models import (
    InitiationMethod,
    Operation,
    OperationRequest,
    OperationStatus,
    StepStatus,
)
from daycycle.utils.errors import OperationNotFoundError, StateError

from tests.conftest import make_service, make_validator, wait_until


class GatedExecutor(SimulatedActionExecutor):
    """Holds every start until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def execute(self, service, action, timeout):
        self.gate.wait(5)
        return super().execute(service, action, timeout)


@pytest.fixture
def services():
    return [make_service(1, "db"), make_service(2, "app", sod=[1])]


@pytest.fixture
def make_operation_service(store, settings, services):
    created = []

    def _make(executor=None, banking=None):
        registry = ServiceRegistry(services)
        sod = SODOrchestrator(
            store, registry, executor or SimulatedActionExecutor(),
            settings=settings, validator=make_validator(store, services),
        )
        eod = EODOrchestrator(
            store, registry, banking or SimulatedBankingOperations(),
            settings=settings, validator=make_validator(store, services),
        )
        service = OperationService(store, sod, eod, max_concurrent_operations=2)
        created.append(service)
        return service

    yield _make
    for service in created:
        service.shutdown(wait=True, cancel_running=True)


def request(**kwargs):
    kwargs.setdefault("environment", "test")
    return OperationRequest(**kwargs)


class TestStartOperations:
    def test_start_sod_returns_initiated_immediately(self, make_operation_service, store):
        service = make_operation_service()

        result = service.start_sod(request(), "alice")

        assert result.status == OperationStatus.INITIATED
        assert result.estimated_duration_minutes == 2
        operation = service.wait(result.operation_id, timeout=5)
        assert operation.status == OperationStatus.COMPLETED
        assert operation.initiated_by == "alice"
        assert operation.initiation_method == InitiationMethod.MANUAL
        assert operation.expected_steps == 7

    def test_start_eod(self, make_operation_service):
        service = make_operation_service()

        result = service.start_eod(request(), "bob", InitiationMethod.SCHEDULED)

        assert result.estimated_duration_minutes == 75
        operation = service.wait(result.operation_id, timeout=5)
        assert operation.status == OperationStatus.COMPLETED
        assert operation.operation_type == OperationType.EOD
        assert operation.expected_steps == EOD_STEP_COUNT
        assert operation.initiation_method == InitiationMethod.SCHEDULED

    def test_start_dispatches_on_operation_type(self, make_operation_service):
        service = make_operation_service()

        result = service.start(OperationType.EOD, request(dry_run=True), "carol")

        assert "(dry run)" in result.message
        assert service.wait(result.operation_id, 5).operation_type == OperationType.EOD

    def test_bad_filter_still_initiates_and_then_fails(self, make_operation_service):
        service = make_operation_service()

        result = service.start_sod(request(services_filter=["nope"]), "alice")

        assert result.status == OperationStatus.INITIATED
        assert result.estimated_duration_minutes == 15
        operation = service.wait(result.operation_id, timeout=5)
        assert operation.status == OperationStatus.FAILED

    def test_list_operations(self, make_operation_service):
        service = make_operation_service()
        first = service.start_sod(request(), "alice")
        second = service.start_eod(request(environment="uat"), "alice")
        service.wait(first.operation_id, 5)
        service.wait(second.operation_id, 5)

        operations, total = service.list_operations()
        uat_only, uat_total = service.list_operations(environment="uat")

        assert total == 2
        assert {op.operation_id for op in operations} == {first.operation_id, second.operation_id}
        assert uat_total == 1
        assert uat_only[0].operation_id == second.operation_id


class TestOperationStatus:
    def create(self, store, status=None, expected_steps=10):
        operation = store.create_operation(Operation(
            operation_type=OperationType.SOD,
            environment="test",
            initiated_by="tester",
            expected_steps=expected_steps,
        ))
        if status is not None:
            store.update_operation_status(operation.operation_id, status)
        return operation.operation_id

    def test_initiated_progress(self, make_operation_service, store):
        service = make_operation_service()
        operation_id = self.create(store)

        report = service.get_operation_status(operation_id)

        assert report.progress_percentage == 5
        assert report.current_step == "Initiated"

    def test_running_progress_ignores_rollback_steps(self, make_operation_service, store):
        service = make_operation_service()
        operation_id = self.create(store, OperationStatus.RUNNING)
        for name in ("Pre-Validation", "Dependency Resolution", "Phase 1"):
            store.upsert_step(operation_id, name, StepStatus.COMPLETED)
        store.upsert_step(operation_id, "Rollback Phase 1", StepStatus.COMPLETED)
        store.upsert_step(operation_id, "Start db", StepStatus.RUNNING)

        report = service.get_operation_status(operation_id)

        assert report.progress_percentage == 30
        assert report.current_step == "Start db"
        assert len(report.steps) == 5

    def test_running_progress_is_capped(self, make_operation_service, store):
        service = make_operation_service()
        operation_id = self.create(store, OperationStatus.RUNNING, expected_steps=2)
        for name in ("a", "b", "c"):
            store.upsert_step(operation_id, name, StepStatus.COMPLETED)

        assert service.get_operation_status(operation_id).progress_percentage == 99

    def test_finished_progress(self, make_operation_service, store):
        service = make_operation_service()
        completed = self.create(store, OperationStatus.RUNNING)
        store.update_operation_status(completed, OperationStatus.COMPLETED)
        failed = self.create(store, OperationStatus.FAILED)

        assert service.get_operation_status(completed).progress_percentage == 100
        failed_report = service.get_operation_status(failed)
        assert failed_report.progress_percentage == 0
        assert failed_report.current_step == "Failed"

    def test_unknown_operation(self, make_operation_service):
        with pytest.raises(OperationNotFoundError):
            make_operation_service().get_operation_status("missing")


class TestCancelOperation:
    def test_cancel_running_operation(self, make_operation_service, store):
        executor = GatedExecutor()
        service = make_operation_service(executor=executor)
        result = service.start_sod(request(), "alice")
        wait_until(lambda: (store.get_step(result.operation_id, "Start db") or None) is not None)

        ack = service.cancel_operation(result.operation_id, "bob")
        executor.gate.set()
        operation = service.wait(result.operation_id, timeout=5)

        assert "bob" in ack.message
        assert operation.status == OperationStatus.CANCELLED
        assert executor.started_services() == ["db"]
        assert executor.stopped_services() == ["db"]

    def test_cancel_orphaned_operation(self, make_operation_service, store):
        service = make_operation_service()
        operation = store.create_operation(Operation(
            operation_type=OperationType.EOD, environment="test", initiated_by="tester"
        ))

        ack = service.cancel_operation(operation.operation_id, "bob")

        assert ack.status == OperationStatus.CANCELLED
        assert store.get_operation(operation.operation_id).status == OperationStatus.CANCELLED

    def test_finished_operation_cannot_be_cancelled(self, make_operation_service):
        service = make_operation_service()
        result = service.start_sod(request(), "alice")
        service.wait(result.operation_id, timeout=5)

        with pytest.raises(StateError):
            service.cancel_operation(result.operation_id, "bob")

    def test_unknown_operation(self, make_operation_service):
        with pytest.raises(OperationNotFoundError):
            make_operation_service().cancel_operation("missing", "bob")


class TestFromConfig:
    def test_simulated_configuration(self):
        config = Config.from_dict({
            "project": {"name": "bank", "state_path": None, "log_dir": None},
            "orchestration": {"dry_run_delay": 0},
            "services": [{"id": 1, "name": "db", "host": "db01"}],
        })
        service = OperationService.from_config(config)

        try:
            result = service.start_sod(request(dry_run=True), "alice")
            operation = service.wait(result.operation_id, timeout=5)
        finally:
            service.shutdown()

        assert operation.status == OperationStatus.COMPLETED
        assert isinstance(service.eod.banking, SimulatedBankingOperations)
