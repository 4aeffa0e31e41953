"""SOD/EOD orchestration: dependency planning, phase execution and rollback."""

from .dependency_graph import (
    DependencyResolver,
    ServiceDependency,
    ServiceDependencyGraph,
    ServiceNode,
    ValidationResult,
)
from .planner import ExecutionPhase, ExecutionPlanner, ServiceExecutionPlan
from .executor import ExecutionStatus, PhaseExecutionResult, PhaseExecutor, ServiceActionResult
from .validation import CheckResult, PreValidationReport, PreValidator
from .rollback import RollbackManager, RollbackResult
from .base import BaseOrchestrator, RunContext, StepHandle
from .sod import SODOrchestrator
from .eod import EODOrchestrator
from .service import OperationService

__all__ = [
    'DependencyResolver',
    'ServiceDependency',
    'ServiceDependencyGraph',
    'ServiceNode',
    'ValidationResult',
    'ExecutionPhase',
    'ExecutionPlanner',
    'ServiceExecutionPlan',
    'ExecutionStatus',
    'PhaseExecutionResult',
    'PhaseExecutor',
    'ServiceActionResult',
    'CheckResult',
    'PreValidationReport',
    'PreValidator',
    'RollbackManager',
    'RollbackResult',
    'BaseOrchestrator',
    'RunContext',
    'StepHandle',
    'SODOrchestrator',
    'EODOrchestrator',
    'OperationService',
]
