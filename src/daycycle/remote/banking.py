"""Banking batch operations used by End of Day processing."""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from daycycle.config.models import EODConfig
from daycycle.utils.errors import ConfigurationError, ErrorContext, ExecutionError
from daycycle.utils.logging import get_logger

from .base import RemoteActionExecutor

logger = get_logger(__name__)

# Sequential sub-phases of End of Day processing, in execution order
EOD_PHASES: Dict[str, List[str]] = {
    "Daily Processing": [
        "Interest Calculations",
        "Standing Instructions",
        "Account Maintenance",
        "Position Calculations",
    ],
    "Reconciliation and Reporting": [
        "Internal Reconciliation",
        "External Reconciliation",
        "Regulatory Reports",
        "Management Reports",
    ],
    "System Cleanup": [
        "Transaction Archival",
        "File Cleanup",
        "Statistics Update",
        "Next Day Preparation",
    ],
}

EOD_TASKS: List[str] = [task for tasks in EOD_PHASES.values() for task in tasks]


class BankingOperations(ABC):
    """Core banking actions driven by the End of Day orchestrator.

    Methods raise ExecutionError when the banking system rejects the action.
    """

    @abstractmethod
    def halt_transaction_intake(self, environment: str) -> None:
        pass

    @abstractmethod
    def process_pending_transactions(self, environment: str, cutoff_time: datetime) -> int:
        """Process queued transactions up to the cutoff.

        Returns:
            Number of transactions processed
        """
        pass

    @abstractmethod
    def get_pending_transaction_count(self, environment: str) -> int:
        pass

    @abstractmethod
    def run_task(self, environment: str, task: str) -> str:
        """Run one End of Day task and return a short summary."""
        pass

    @abstractmethod
    def resume_transaction_intake(self, environment: str) -> None:
        pass

    @abstractmethod
    def revert_postings(self, environment: str) -> None:
        pass

    @abstractmethod
    def compensate(self, environment: str, step_name: str) -> None:
        """Undo the effect of a completed End of Day step, if it has one."""
        pass


class SimulatedBankingOperations(BankingOperations):
    """Scripted banking backend for dry runs and tests.

    Pending counts are returned in sequence; the last value repeats once
    the script is exhausted. Failures are keyed by method or task name.
    """

    def __init__(
        self,
        pending_counts: Optional[List[int]] = None,
        failures: Optional[Dict[str, str]] = None,
        delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.pending_counts = list(pending_counts) if pending_counts else [0]
        self.failures = dict(failures or {})
        self.delay = delay
        self.sleep = sleep
        self.calls: List[Tuple[str, str]] = []
        self.intake_open = True
        self._poll_index = 0
        self._lock = threading.Lock()

    def _record(self, method: str, argument: str = "") -> None:
        with self._lock:
            self.calls.append((method, argument))
        if self.delay:
            self.sleep(self.delay)
        error = self.failures.get(argument) or self.failures.get(method)
        if error:
            raise ExecutionError(
                f"{argument or method} failed: {error}",
                context=ErrorContext(step_name=argument or method)
            )

    def halt_transaction_intake(self, environment: str) -> None:
        self._record('halt_transaction_intake')
        self.intake_open = False

    def process_pending_transactions(self, environment: str, cutoff_time: datetime) -> int:
        self._record('process_pending_transactions')
        return self.pending_counts[0]

    def get_pending_transaction_count(self, environment: str) -> int:
        self._record('get_pending_transaction_count')
        with self._lock:
            index = min(self._poll_index, len(self.pending_counts) - 1)
            self._poll_index += 1
            return self.pending_counts[index]

    def run_task(self, environment: str, task: str) -> str:
        self._record('run_task', task)
        return f"{task} completed"

    def resume_transaction_intake(self, environment: str) -> None:
        self._record('resume_transaction_intake')
        self.intake_open = True

    def revert_postings(self, environment: str) -> None:
        self._record('revert_postings')

    def compensate(self, environment: str, step_name: str) -> None:
        self._record('compensate', step_name)


class CommandBankingOperations(BankingOperations):
    """Runs configured shell commands on the batch host.

    Command templates may use {environment} and {cutoff}. The pending
    count command must print a single integer.
    """

    REQUIRED_COMMANDS = [
        'halt_intake',
        'process_pending',
        'pending_count',
        'resume_intake',
    ] + EOD_TASKS

    def __init__(self, executor: RemoteActionExecutor, eod_config: EODConfig):
        """Initialize command-backed banking operations.

        Args:
            executor: Transport used to run commands on the batch host
            eod_config: Batch host, command templates and timeout

        Raises:
            ConfigurationError: If the batch host or a required command is missing
        """
        if not eod_config.batch_host:
            raise ConfigurationError("eod.batch_host is required for command-backed EOD")
        missing = [name for name in self.REQUIRED_COMMANDS if name not in eod_config.commands]
        if missing:
            raise ConfigurationError(
                f"Missing EOD commands: {', '.join(missing)}",
                suggestions=[f"Add eod.commands.{name} to the configuration" for name in missing[:3]]
            )
        self.executor = executor
        self.config = eod_config

    def _run(self, key: str, environment: str, cutoff: Optional[datetime] = None) -> str:
        command = self.config.commands[key].format(
            environment=environment,
            cutoff=cutoff.isoformat() if cutoff else '',
        )
        result = self.executor.run_command(
            self.config.batch_host,
            self.config.batch_instance_id,
            command,
            self.config.command_timeout,
        )
        if not result.success:
            raise ExecutionError(
                f"EOD command '{key}' failed on {self.config.batch_host}: {result.error}",
                context=ErrorContext(host=self.config.batch_host, step_name=key)
            )
        return result.output.strip()

    def halt_transaction_intake(self, environment: str) -> None:
        self._run('halt_intake', environment)

    def process_pending_transactions(self, environment: str, cutoff_time: datetime) -> int:
        output = self._run('process_pending', environment, cutoff_time)
        return int(output) if output.isdigit() else 0

    def get_pending_transaction_count(self, environment: str) -> int:
        output = self._run('pending_count', environment)
        try:
            return int(output.split()[-1])
        except (IndexError, ValueError):
            raise ExecutionError(f"Pending count command returned non-numeric output: {output!r}")

    def run_task(self, environment: str, task: str) -> str:
        return self._run(task, environment) or f"{task} completed"

    def resume_transaction_intake(self, environment: str) -> None:
        self._run('resume_intake', environment)

    def revert_postings(self, environment: str) -> None:
        if 'revert_postings' not in self.config.commands:
            logger.warning("No revert_postings command configured; postings left in place")
            return
        self._run('revert_postings', environment)

    def compensate(self, environment: str, step_name: str) -> None:
        key = f"compensate {step_name}"
        if key not in self.config.commands:
            logger.debug(f"Nothing to compensate for {step_name}")
            return
        self._run(key, environment)
