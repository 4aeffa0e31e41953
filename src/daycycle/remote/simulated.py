"""Deterministic in-process executor used for dry runs and tests."""

import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from daycycle.config.models import ServiceDefinition
from daycycle.utils.logging import get_logger

from .base import ActionResult, ActionType, RemoteActionExecutor

logger = get_logger(__name__)


class SimulatedActionExecutor(RemoteActionExecutor):
    """Executor that tracks service state in memory.

    Start marks a service running, Stop clears it and HealthCheck succeeds
    only for running services. Failures are scripted per (service, action)
    with fail(); calls are recorded in order for inspection.
    """

    def __init__(
        self,
        delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        running: Optional[Set[str]] = None
    ):
        """Initialize simulated executor.

        Args:
            delay: Seconds each action takes
            sleep: Function used to wait for the delay
            running: Names of services that start out running
        """
        self.delay = delay
        self.sleep = sleep
        self.running: Set[str] = set(running or ())
        self.calls: List[Tuple[str, ActionType]] = []
        self.commands: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, ActionType], str] = {}
        self._command_outputs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def fail(self, service_name: str, action: ActionType, error: str = "simulated failure"):
        """Make every future action of this kind on the service fail."""
        self._failures[(service_name, ActionType(action))] = error

    def set_command_output(self, command: str, output: str):
        self._command_outputs[command] = output

    def execute(
        self,
        service: ServiceDefinition,
        action: ActionType,
        timeout: float
    ) -> ActionResult:
        action = ActionType(action)
        with self._lock:
            self.calls.append((service.name, action))

        if self.delay:
            self.sleep(min(self.delay, timeout))

        error = self._failures.get((service.name, action))
        if error:
            logger.debug(f"Simulated {action.value} failure", extra={'service': service.name})
            return ActionResult(success=False, error=error)

        with self._lock:
            if action in (ActionType.START, ActionType.RESTART):
                self.running.add(service.name)
            elif action == ActionType.STOP:
                self.running.discard(service.name)
            elif service.name not in self.running:
                return ActionResult(success=False, error=f"{service.name} is not running")

        return ActionResult(success=True, output=f"{action.value} {service.name} on {service.host}")

    def run_command(
        self,
        host: str,
        instance_id: Optional[str],
        command: str,
        timeout: float
    ) -> ActionResult:
        with self._lock:
            self.commands.append((host, command))
        return ActionResult(success=True, output=self._command_outputs.get(command, ""))

    def started_services(self) -> List[str]:
        """Names of services in the order Start was requested."""
        with self._lock:
            return [name for name, action in self.calls if action == ActionType.START]

    def stopped_services(self) -> List[str]:
        with self._lock:
            return [name for name, action in self.calls if action == ActionType.STOP]
