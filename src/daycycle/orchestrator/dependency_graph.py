"""Service dependency graph for SOD and EOD ordering."""

from typing import Dict, List, Optional, Set, Iterable
from dataclasses import dataclass, field
from collections import defaultdict

from daycycle.config.models import OperationType, ServiceDefinition
from daycycle.config.parser import ServiceRegistry
from daycycle.utils.errors import DependencyError, ErrorContext
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ServiceNode:
    """Node in the dependency graph."""

    service_id: int
    name: str
    type: str
    is_critical: bool
    estimated_duration: int  # seconds
    dependency_level: int = 0


@dataclass
class ServiceDependency:
    """Directed edge: from_service_id depends on to_service_id."""

    from_service_id: int
    to_service_id: int
    dependency_type: str = "Hard"
    condition: str = "Running"


@dataclass
class ValidationResult:
    """Outcome of a validation pass."""

    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Fold another result into this one and return self."""
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.is_valid = self.is_valid and other.is_valid
        return self


class ServiceDependencyGraph:
    """Directed graph of enabled services for one operation type."""

    def __init__(self, operation_type: OperationType):
        """Initialize empty dependency graph."""
        self.operation_type = OperationType(operation_type)
        self.nodes: Dict[int, ServiceNode] = {}
        self.edges: List[ServiceDependency] = []
        self.has_circular_dependencies = False
        self._dependencies: Dict[int, Set[int]] = defaultdict(set)
        self._dependents: Dict[int, Set[int]] = defaultdict(set)

    def add_node(self, node: ServiceNode) -> None:
        self.nodes[node.service_id] = node

    def add_edge(self, edge: ServiceDependency) -> None:
        """Add a dependency edge between two existing nodes."""
        self.edges.append(edge)
        self._dependencies[edge.from_service_id].add(edge.to_service_id)
        self._dependents[edge.to_service_id].add(edge.from_service_id)

    def get_node(self, service_id: int) -> Optional[ServiceNode]:
        return self.nodes.get(service_id)

    def get_dependencies(self, service_id: int) -> Set[int]:
        """Get ids of the services this service depends on.

        Args:
            service_id: Service id

        Returns:
            Set of service ids
        """
        return set(self._dependencies.get(service_id, ()))

    def get_dependents(self, service_id: int) -> Set[int]:
        """Get ids of the services that depend on this service."""
        return set(self._dependents.get(service_id, ()))

    @property
    def max_depth(self) -> int:
        return max((node.dependency_level for node in self.nodes.values()), default=0)

    def find_cycle(self) -> Optional[List[int]]:
        """Find one dependency cycle.

        Uses DFS with a recursion stack; reaching a node that is still on
        the stack closes a cycle.

        Returns:
            Service ids along the cycle with the first id repeated at the end,
            or None if the graph is acyclic
        """
        visited: Set[int] = set()
        stack: List[int] = []
        on_stack: Set[int] = set()

        def dfs(service_id: int) -> Optional[List[int]]:
            visited.add(service_id)
            stack.append(service_id)
            on_stack.add(service_id)

            for dependency_id in sorted(self._dependencies.get(service_id, ())):
                if dependency_id in on_stack:
                    return stack[stack.index(dependency_id):] + [dependency_id]
                if dependency_id not in visited:
                    cycle = dfs(dependency_id)
                    if cycle:
                        return cycle

            stack.pop()
            on_stack.discard(service_id)
            return None

        for service_id in sorted(self.nodes):
            if service_id not in visited:
                cycle = dfs(service_id)
                if cycle:
                    return cycle
        return None

    def describe_cycle(self, cycle: Iterable[int]) -> str:
        return " -> ".join(
            self.nodes[service_id].name if service_id in self.nodes else str(service_id)
            for service_id in cycle
        )


class DependencyResolver:
    """Builds dependency graphs from the service registry."""

    # Critical services deeper than this get a warning
    MAX_CRITICAL_DEPTH = 3

    def __init__(self, registry: Optional[ServiceRegistry] = None):
        self.registry = registry

    def resolve_service_dependencies(
        self,
        operation_type: OperationType,
        services: Optional[List[ServiceDefinition]] = None
    ) -> ServiceDependencyGraph:
        """Build the dependency graph for an operation type.

        Args:
            operation_type: SOD or EOD
            services: Service definitions to use instead of the registry

        Returns:
            Graph of enabled services with levels and cycle flag computed

        Raises:
            DependencyError: If an enabled service depends on a missing or disabled service
        """
        graph, problems = self._build_graph(operation_type, self._services(services))
        if problems:
            raise DependencyError(
                problems[0] if len(problems) == 1 else
                f"{len(problems)} dependency problems: " + "; ".join(problems),
                context=ErrorContext(operation_type=OperationType(operation_type).value),
                suggestions=['Enable the missing services or remove them from the dependency lists']
            )
        return graph

    def validate_dependency_constraints(
        self,
        operation_type: OperationType,
        services: Optional[List[ServiceDefinition]] = None
    ) -> ValidationResult:
        """Check the dependency declarations without raising.

        Args:
            operation_type: SOD or EOD
            services: Service definitions to use instead of the registry

        Returns:
            Errors for cycles and missing or disabled targets; warnings for
            critical services with deep dependency chains
        """
        result = ValidationResult()
        graph, problems = self._build_graph(operation_type, self._services(services))
        for problem in problems:
            result.add_error(problem)

        cycle = graph.find_cycle()
        if cycle:
            result.add_error(f"Circular dependency detected: {graph.describe_cycle(cycle)}")

        for node in graph.nodes.values():
            if node.is_critical and node.dependency_level > self.MAX_CRITICAL_DEPTH:
                result.add_warning(
                    f"Critical service {node.name} has very deep dependency chain "
                    f"(level {node.dependency_level})"
                )

        return result

    def _services(self, services: Optional[List[ServiceDefinition]]) -> List[ServiceDefinition]:
        if services is not None:
            return list(services)
        if self.registry is None:
            raise DependencyError("No service registry or service list given")
        return self.registry.get_services()

    def _build_graph(self, operation_type: OperationType, services: List[ServiceDefinition]):
        """Build the graph, collecting dangling dependency problems instead of raising."""
        operation_type = OperationType(operation_type)
        graph = ServiceDependencyGraph(operation_type)
        by_id = {service.id: service for service in services}
        enabled = sorted((s for s in services if s.is_enabled), key=lambda s: s.id)
        problems: List[str] = []

        for service in enabled:
            graph.add_node(ServiceNode(
                service_id=service.id,
                name=service.name,
                type=service.type,
                is_critical=service.is_critical_for(operation_type),
                estimated_duration=service.timeout_for(operation_type),
            ))

        for service in enabled:
            for dependency_id in service.dependencies_for(operation_type):
                target = by_id.get(dependency_id)
                if target is None:
                    problems.append(
                        f"Service {service.name} depends on service {dependency_id} which does not exist"
                    )
                    continue
                if not target.is_enabled:
                    problems.append(
                        f"Service {service.name} depends on disabled service {target.name}"
                    )
                    continue
                graph.add_edge(ServiceDependency(
                    from_service_id=service.id,
                    to_service_id=dependency_id,
                ))

        self._calculate_levels(graph)
        graph.has_circular_dependencies = graph.find_cycle() is not None
        if graph.has_circular_dependencies:
            logger.warning(f"Circular dependencies detected in {operation_type.value} graph")

        return graph, problems

    def _calculate_levels(self, graph: ServiceDependencyGraph) -> None:
        """Longest path from a service without dependencies, by repeated relaxation."""
        for node in graph.nodes.values():
            node.dependency_level = 0

        max_iterations = len(graph.nodes) * 2
        changed = bool(graph.nodes)
        iteration = 0

        while changed and iteration < max_iterations:
            changed = False
            iteration += 1
            for service_id in sorted(graph.nodes):
                node = graph.nodes[service_id]
                dependencies = graph.get_dependencies(service_id)
                if not dependencies:
                    continue
                new_level = max(graph.nodes[d].dependency_level for d in dependencies) + 1
                if new_level != node.dependency_level:
                    node.dependency_level = new_level
                    changed = True

        if changed:
            logger.warning(
                f"Dependency level calculation did not converge after {iteration} iterations"
            )
