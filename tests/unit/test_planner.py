"""Tests for phase planning."""

import pytest
from hypothesis import given, settings, strategies as st

from daycycle.config.models import OperationType
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.dependency_graph import DependencyResolver
from daycycle.orchestrator.planner import ExecutionPlanner
from daycycle.utils.errors import DependencyError

from tests.conftest import make_service


def plan_for(services, targeted=None, operation_type=OperationType.SOD, planner=None):
    graph = DependencyResolver().resolve_service_dependencies(operation_type, services)
    return (planner or ExecutionPlanner()).create_execution_plan(
        graph, targeted if targeted is not None else services
    )


class TestExecutionPlanner:
    def test_ready_sets_become_phases(self, layered_services):
        plan = plan_for(layered_services)

        assert [phase.service_names for phase in plan.phases] == [["A", "B", "E"], ["C"], ["D"]]
        assert [phase.phase_number for phase in plan.phases] == [1, 2, 3]
        assert plan.total_services == 5
        assert plan.unplaced_services == []

    def test_every_dependency_sits_in_an_earlier_phase(self, layered_services):
        plan = plan_for(layered_services)

        for service in layered_services:
            for dependency_id in service.sod_dependencies:
                dependency = next(s for s in layered_services if s.id == dependency_id)
                assert plan.phase_of(dependency.name) < plan.phase_of(service.name)

    def test_dependencies_outside_the_filter_do_not_block(self, layered_services):
        targeted = [s for s in layered_services if s.name in ("C", "D")]

        plan = plan_for(layered_services, targeted)

        assert [phase.service_names for phase in plan.phases] == [["C"], ["D"]]
        assert plan.phase_of("A") == 0

    def test_phase_members_ordered_by_operation_order(self):
        services = [
            make_service(1, "alpha", sod_order=2),
            make_service(2, "beta", sod_order=1),
            make_service(3, "gamma", sod_order=1),
        ]

        plan = plan_for(services)

        assert plan.phases[0].service_names == ["beta", "gamma", "alpha"]

    def test_parallel_phase_duration_is_longest_timeout(self):
        services = [
            make_service(1, "a", sod_timeout=30),
            make_service(2, "b", sod_timeout=90),
        ]

        plan = plan_for(services)

        assert plan.phases[0].can_execute_in_parallel
        assert plan.phases[0].estimated_duration == 90
        assert plan.estimated_total_duration == 90
        assert plan.estimated_minutes == 2

    @pytest.mark.parametrize("flags", [
        {"allow_parallel_execution": False},
        {"requires_manual_confirmation": True},
    ])
    def test_sequential_phase_duration_is_sum_of_timeouts(self, flags):
        services = [
            make_service(1, "a", sod_timeout=30),
            make_service(2, "b", sod_timeout=90, **flags),
        ]

        plan = plan_for(services)

        assert not plan.phases[0].can_execute_in_parallel
        assert plan.phases[0].estimated_duration == 120

    def test_critical_services_counted_per_operation_type(self):
        services = [
            make_service(1, "a", is_critical_for_sod=False),
            make_service(2, "b"),
        ]

        assert plan_for(services).critical_services == 1
        assert plan_for(services, operation_type=OperationType.EOD).critical_services == 2

    def test_cycle_cannot_be_planned(self):
        services = [
            make_service(1, "X", sod=[2]),
            make_service(2, "Y", sod=[1]),
        ]

        with pytest.raises(DependencyError, match="circular dependencies"):
            plan_for(services)

    def test_service_missing_from_graph(self):
        services = [make_service(1, "a")]
        stranger = make_service(9, "stranger")

        with pytest.raises(DependencyError, match="stranger"):
            plan_for(services, services + [stranger])

    def test_phase_limit_leaves_services_unplaced(self):
        chain = [make_service(1, "s1")] + [
            make_service(i, f"s{i}", sod=[i - 1]) for i in range(2, 6)
        ]
        planner = ExecutionPlanner()
        planner.MAX_PHASES = 3

        plan = plan_for(chain, planner=planner)

        assert len(plan.phases) == 3
        assert plan.unplaced_services == ["s4", "s5"]
        assert plan.total_services == 3

    def test_empty_target_set(self, layered_services):
        plan = plan_for(layered_services, [])

        assert plan.phases == []
        assert plan.estimated_minutes == 0


@st.composite
def targeted_dags(draw):
    """Random acyclic services (dependencies only on lower ids) and a target subset."""
    n = draw(st.integers(min_value=1, max_value=10))
    services = [
        make_service(
            i, f"svc{i}",
            sod=sorted(draw(st.sets(st.integers(min_value=1, max_value=i - 1), max_size=3)))
            if i > 1 else [],
        )
        for i in range(1, n + 1)
    ]
    targeted = draw(st.lists(st.sampled_from(services), min_size=1, unique_by=lambda s: s.id))
    return services, targeted


class TestPlanProperties:
    @settings(max_examples=200, deadline=None)
    @given(targeted_dags())
    def test_targets_placed_once_after_their_targeted_dependencies(self, dag):
        services, targeted = dag

        graph = DependencyResolver(ServiceRegistry(services)).resolve_service_dependencies(
            OperationType.SOD
        )
        plan = ExecutionPlanner().create_execution_plan(graph, targeted)

        placed = [name for phase in plan.phases for name in phase.service_names]
        assert sorted(placed) == sorted(s.name for s in targeted)
        assert plan.unplaced_services == []

        targeted_ids = {s.id for s in targeted}
        for service in targeted:
            for dependency_id in service.sod_dependencies:
                if dependency_id in targeted_ids:
                    assert plan.phase_of(f"svc{dependency_id}") < plan.phase_of(service.name)
