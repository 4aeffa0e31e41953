"""Execution planner that groups services into ordered phases."""

from typing import List, Set
from dataclasses import dataclass, field

from daycycle.config.models import OperationType, ServiceDefinition
from daycycle.orchestrator.dependency_graph import ServiceDependencyGraph
from daycycle.utils.errors import DependencyError, ErrorContext
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ExecutionPhase:
    """A batch of services whose dependencies were all placed in earlier phases."""

    phase_number: int
    services: List[ServiceDefinition]
    can_execute_in_parallel: bool
    estimated_duration: int  # seconds

    @property
    def service_names(self) -> List[str]:
        return [service.name for service in self.services]

    def size(self) -> int:
        return len(self.services)


@dataclass
class ServiceExecutionPlan:
    """Ordered phases for one operation."""

    operation_type: OperationType
    phases: List[ExecutionPhase] = field(default_factory=list)
    estimated_total_duration: int = 0  # seconds
    total_services: int = 0
    critical_services: int = 0
    unplaced_services: List[str] = field(default_factory=list)

    @property
    def estimated_minutes(self) -> int:
        return -(-self.estimated_total_duration // 60)

    def phase_of(self, service_name: str) -> int:
        """Phase number holding a service, or 0 if it is not in the plan."""
        for phase in self.phases:
            if service_name in phase.service_names:
                return phase.phase_number
        return 0


class ExecutionPlanner:
    """Creates phase-based execution plans from dependency graphs."""

    MAX_PHASES = 50

    def create_execution_plan(
        self,
        graph: ServiceDependencyGraph,
        services: List[ServiceDefinition]
    ) -> ServiceExecutionPlan:
        """Group the targeted services into phases.

        A service is ready once every dependency it has inside the targeted
        set sits in an earlier phase; dependencies outside the set do not
        block. Each ready set becomes the next phase.

        Args:
            graph: Dependency graph for the operation
            services: Services targeted by this run, all present in the graph

        Returns:
            ServiceExecutionPlan with phases numbered from 1

        Raises:
            DependencyError: If the graph has cycles or a service is not in the graph
        """
        operation_type = graph.operation_type

        if graph.has_circular_dependencies:
            cycle = graph.find_cycle()
            raise DependencyError(
                "Cannot plan execution: circular dependencies detected"
                + (f" ({graph.describe_cycle(cycle)})" if cycle else ""),
                context=ErrorContext(operation_type=operation_type.value)
            )

        targeted = {}
        for service in services:
            if graph.get_node(service.id) is None:
                raise DependencyError(
                    f"Service {service.name} is not part of the {operation_type.value} dependency graph",
                    context=ErrorContext(service_name=service.name)
                )
            targeted[service.id] = service

        plan = ServiceExecutionPlan(operation_type=operation_type)
        placed: Set[int] = set()
        remaining = set(targeted)

        while remaining:
            if len(plan.phases) >= self.MAX_PHASES:
                logger.error(
                    f"Phase limit of {self.MAX_PHASES} reached with {len(remaining)} services unplaced"
                )
                plan.unplaced_services = sorted(targeted[i].name for i in remaining)
                break

            ready = {
                service_id for service_id in remaining
                if (graph.get_dependencies(service_id) & targeted.keys()) <= placed
            }

            if not ready:
                logger.warning(
                    f"Dependency deadlock detected, placing remaining {len(remaining)} services in a single phase"
                )
                ready = set(remaining)

            plan.phases.append(self._build_phase(
                len(plan.phases) + 1, [targeted[i] for i in ready], operation_type
            ))
            placed |= ready
            remaining -= ready

        plan.estimated_total_duration = sum(phase.estimated_duration for phase in plan.phases)
        plan.total_services = sum(phase.size() for phase in plan.phases)
        plan.critical_services = sum(
            1 for phase in plan.phases for service in phase.services
            if service.is_critical_for(operation_type)
        )

        logger.info(
            f"Created {operation_type.value} plan: {len(plan.phases)} phases, "
            f"{plan.total_services} services, ~{plan.estimated_minutes} min"
        )
        return plan

    def _build_phase(
        self,
        phase_number: int,
        services: List[ServiceDefinition],
        operation_type: OperationType
    ) -> ExecutionPhase:
        ordered = sorted(services, key=lambda s: (s.order_for(operation_type), s.name))
        parallel = all(
            s.allow_parallel_execution and not s.requires_manual_confirmation for s in ordered
        )
        timeouts = [s.timeout_for(operation_type) for s in ordered]

        return ExecutionPhase(
            phase_number=phase_number,
            services=ordered,
            can_execute_in_parallel=parallel,
            estimated_duration=max(timeouts) if parallel else sum(timeouts),
        )
