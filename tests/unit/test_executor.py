"""Tests for the phase executor."""

import threading
import time

from daycycle.config.models import OperationType
from daycycle.orchestrator.executor import ExecutionStatus, PhaseExecutor
from daycycle.orchestrator.planner import ExecutionPhase
from daycycle.remote.base import ActionResult, ActionType, RemoteActionExecutor
from daycycle.remote.simulated import SimulatedActionExecutor

from tests.conftest import make_service


def phase_of(*services, parallel=True):
    return ExecutionPhase(
        phase_number=1,
        services=list(services),
        can_execute_in_parallel=parallel,
        estimated_duration=60,
    )


class BarrierExecutor(RemoteActionExecutor):
    """Each start waits until every member of the phase has started."""

    def __init__(self, parties):
        self.barrier = threading.Barrier(parties, timeout=5)

    def execute(self, service, action, timeout):
        self.barrier.wait()
        return ActionResult(success=True, output=f"{service.name} up")

    def run_command(self, host, instance_id, command, timeout):
        return ActionResult(success=True)


class CountingExecutor(RemoteActionExecutor):
    """Records the highest number of starts running at the same time."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def execute(self, service, action, timeout):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self.lock:
            self.active -= 1
        return ActionResult(success=True)

    def run_command(self, host, instance_id, command, timeout):
        return ActionResult(success=True)


class ExplodingExecutor(SimulatedActionExecutor):
    def execute(self, service, action, timeout):
        raise ConnectionError("host unreachable")


class TestExecutePhase:
    def test_parallel_phase_starts_members_concurrently(self):
        services = [make_service(i, f"svc{i}") for i in range(1, 4)]
        phase_executor = PhaseExecutor(BarrierExecutor(3), max_workers=3)

        result = phase_executor.execute_phase(phase_of(*services), OperationType.SOD)

        assert result.parallel
        assert not result.has_failures()
        assert sorted(result.started) == ["svc1", "svc2", "svc3"]

    def test_parallel_starts_are_bounded_by_max_workers(self):
        services = [make_service(i, f"svc{i}") for i in range(1, 6)]
        executor = CountingExecutor()

        PhaseExecutor(executor, max_workers=2).execute_phase(phase_of(*services), OperationType.SOD)

        assert executor.peak <= 2

    def test_sequential_phase_stops_at_first_failure(self, executor):
        services = [make_service(1, "A"), make_service(2, "B"), make_service(3, "C")]
        executor.fail("B", ActionType.START, "port in use")

        result = PhaseExecutor(executor).execute_phase(
            phase_of(*services, parallel=False), OperationType.SOD
        )

        assert executor.started_services() == ["A", "B"]
        assert result.started == ["A"]
        assert [r.service_name for r in result.get_failed()] == ["B"]
        assert result.results["B"].error == "port in use"
        assert "C" not in result.results

    def test_sequential_phase_runs_checkpoint_before_each_start(self, executor):
        services = [make_service(1, "A"), make_service(2, "B")]
        checkpoints = []

        PhaseExecutor(executor).execute_phase(
            phase_of(*services, parallel=False),
            OperationType.SOD,
            checkpoint=lambda: checkpoints.append(len(executor.calls)),
        )

        assert checkpoints == [0, 1]

    def test_progress_callback_sees_start_and_outcome(self, executor):
        events = []
        service = make_service(1, "A")

        PhaseExecutor(executor).execute_phase(
            phase_of(service),
            OperationType.SOD,
            progress_callback=lambda s, status, message: events.append((s.name, status)),
        )

        assert events == [("A", ExecutionStatus.IN_PROGRESS), ("A", ExecutionStatus.SUCCESS)]

    def test_dry_run_makes_no_remote_calls(self, executor):
        services = [make_service(1, "A"), make_service(2, "B")]

        result = PhaseExecutor(executor, dry_run_delay=0).execute_phase(
            phase_of(*services), OperationType.SOD, dry_run=True
        )

        assert executor.calls == []
        assert sorted(result.started) == ["A", "B"]
        assert result.results["A"].output.startswith("Dry run")

    def test_transport_exception_becomes_failed_result(self):
        result = PhaseExecutor(ExplodingExecutor()).execute_phase(
            phase_of(make_service(1, "A")), OperationType.SOD
        )

        assert result.has_failures()
        assert "host unreachable" in result.results["A"].error


class TestStopServices:
    def test_stops_in_given_order_and_continues_past_failures(self, executor):
        services = [make_service(1, "A"), make_service(2, "B"), make_service(3, "C")]
        executor.fail("B", ActionType.STOP)

        stopped = PhaseExecutor(executor).stop_services(reversed(services), OperationType.SOD)

        assert executor.stopped_services() == ["C", "B", "A"]
        assert stopped == {"A", "C"}

    def test_dry_run_stop_is_not_sent(self, executor):
        stopped = PhaseExecutor(executor).stop_services(
            [make_service(1, "A")], OperationType.SOD, dry_run=True
        )

        assert stopped == {"A"}
        assert executor.calls == []

    def test_health_check_uses_executor(self, executor):
        service = make_service(1, "A")
        phase_executor = PhaseExecutor(executor)

        assert not phase_executor.health_check(service, OperationType.SOD).success
        phase_executor.execute_phase(phase_of(service), OperationType.SOD)
        assert phase_executor.health_check(service, OperationType.SOD).success
