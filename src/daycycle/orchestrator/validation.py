"""Pre-validation battery run before an operation touches any service."""

import os
import shutil
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from daycycle.config.models import OperationType, ServiceDefinition, ValidationConfig
from daycycle.orchestrator.dependency_graph import DependencyResolver, ValidationResult
from daycycle.state.store import StateStore
from daycycle.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CheckResult:
    """Outcome of one pre-validation check."""

    name: str
    passed: bool
    hard: bool
    message: str = ""


@dataclass
class PreValidationReport:
    """All check outcomes of one pre-validation run."""

    checks: List[CheckResult] = field(default_factory=list)
    dependency_errors: List[str] = field(default_factory=list)
    dependency_warnings: List[str] = field(default_factory=list)

    @property
    def hard_failures(self) -> List[CheckResult]:
        return [c for c in self.checks if c.hard and not c.passed]

    @property
    def soft_failures(self) -> List[CheckResult]:
        return [c for c in self.checks if not c.hard and not c.passed]

    def to_validation_result(self) -> ValidationResult:
        result = ValidationResult()
        for check in self.hard_failures:
            result.add_error(f"{check.name}: {check.message}")
        for check in self.soft_failures:
            result.add_warning(f"{check.name}: {check.message}")
        for warning in self.dependency_warnings:
            result.add_warning(warning)
        return result

    def summary(self) -> str:
        passed = sum(1 for c in self.checks if c.passed)
        lines = [f"{passed}/{len(self.checks)} checks passed"]
        for check in self.checks:
            if not check.passed:
                kind = "error" if check.hard else "warning"
                lines.append(f"{kind}: {check.name}: {check.message}")
        for warning in self.dependency_warnings:
            lines.append(f"warning: {warning}")
        return "\n".join(lines)


class PreValidator:
    """Runs datastore, filesystem, network, dependency and resource checks.

    Datastore, filesystem and dependency checks are hard: they block the
    operation unless execution is forced. Network and resource checks only
    produce warnings.
    """

    def __init__(
        self,
        store: StateStore,
        resolver: DependencyResolver,
        config: Optional[ValidationConfig] = None,
        connect: Callable = socket.create_connection,
        disk_usage: Callable = shutil.disk_usage
    ):
        self.store = store
        self.resolver = resolver
        self.config = config or ValidationConfig()
        self.connect = connect
        self.disk_usage = disk_usage

    def validate(
        self,
        operation_type: OperationType,
        services: List[ServiceDefinition]
    ) -> PreValidationReport:
        """Run the full battery.

        Args:
            operation_type: Operation being validated
            services: Full service set used for the dependency check

        Returns:
            PreValidationReport
        """
        report = PreValidationReport()
        report.checks.append(self._check_datastore())
        report.checks.append(self._check_filesystem())
        report.checks.append(self._check_network())

        dependency_result = self.resolver.validate_dependency_constraints(operation_type, services)
        report.dependency_errors = list(dependency_result.errors)
        report.dependency_warnings = list(dependency_result.warnings)
        report.checks.append(CheckResult(
            name="Dependency sanity",
            passed=dependency_result.is_valid,
            hard=True,
            message="; ".join(dependency_result.errors),
        ))

        report.checks.append(self._check_resources())

        for check in report.checks:
            if not check.passed:
                log = logger.error if check.hard else logger.warning
                log(f"Pre-validation check failed: {check.name}: {check.message}")
        return report

    def _check_datastore(self) -> CheckResult:
        if self.store.ping():
            return CheckResult("Datastore connectivity", True, True)
        return CheckResult("Datastore connectivity", False, True, "State store is not writable")

    def _check_filesystem(self) -> CheckResult:
        problems = []
        for path in self.config.filesystem_paths:
            if not Path(path).exists():
                problems.append(f"{path} does not exist")
            elif not os.access(path, os.W_OK):
                problems.append(f"{path} is not writable")
        return CheckResult("Filesystem availability", not problems, True, "; ".join(problems))

    def _check_network(self) -> CheckResult:
        problems = []
        for target in self.config.network_targets:
            host, _, port = target.rpartition(":")
            try:
                connection = self.connect((host, int(port)), timeout=self.config.network_timeout)
            except OSError as e:
                problems.append(f"{target} unreachable ({e})")
            else:
                connection.close()
        return CheckResult("Network reachability", not problems, False, "; ".join(problems))

    def _check_resources(self) -> CheckResult:
        paths = self.config.filesystem_paths or ["."]
        problems = []
        for path in paths:
            if not Path(path).exists():
                continue
            usage = self.disk_usage(path)
            free_percent = usage.free * 100.0 / usage.total if usage.total else 0.0
            if free_percent < self.config.min_free_disk_percent:
                problems.append(
                    f"{path} has {free_percent:.1f}% free, below {self.config.min_free_disk_percent}%"
                )
        return CheckResult("Resource headroom", not problems, False, "; ".join(problems))
