"""Remote action executor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from daycycle.config.models import ServiceDefinition


class ActionType(str, Enum):
    """Actions a remote executor can perform on a service."""
    START = "Start"
    STOP = "Stop"
    RESTART = "Restart"
    HEALTH_CHECK = "HealthCheck"


@dataclass
class ActionResult:
    """Outcome of a remote action or command."""
    success: bool
    output: str = ""
    error: Optional[str] = None


class RemoteActionExecutor(ABC):
    """Performs service actions and ad-hoc commands on remote hosts.

    Implementations must be safe to call from several worker threads at once.
    Failures of the remote action are reported through ActionResult rather
    than raised; raising is reserved for misuse and transport setup errors.
    """

    @abstractmethod
    def execute(
        self,
        service: ServiceDefinition,
        action: ActionType,
        timeout: float
    ) -> ActionResult:
        """Perform an action on a service.

        Args:
            service: Target service; its host and instance_id select the machine
            action: Action to perform
            timeout: Seconds to wait for the action to finish

        Returns:
            ActionResult with the remote output or error text
        """
        pass

    @abstractmethod
    def run_command(
        self,
        host: str,
        instance_id: Optional[str],
        command: str,
        timeout: float
    ) -> ActionResult:
        """Run a shell command on a host.

        Args:
            host: Host name, used for logging and simulated routing
            instance_id: Managed instance id of the host, when the transport needs one
            command: Command line to run
            timeout: Seconds to wait for the command to finish

        Returns:
            ActionResult with the command's standard output or error text
        """
        pass
