"""Remote action executors and banking operations."""

from typing import Optional

from daycycle.config.models import RemoteConfig
from daycycle.utils.aws_client import AWSClientManager

from .base import ActionResult, ActionType, RemoteActionExecutor
from .simulated import SimulatedActionExecutor
from .ssm import SSMActionExecutor
from .banking import (
    EOD_PHASES,
    EOD_TASKS,
    BankingOperations,
    CommandBankingOperations,
    SimulatedBankingOperations,
)


def create_executor(
    remote_config: RemoteConfig,
    client_manager: Optional[AWSClientManager] = None
) -> RemoteActionExecutor:
    """Build the executor selected by remote.executor."""
    if remote_config.executor == 'ssm':
        manager = client_manager or AWSClientManager.from_remote_config(remote_config)
        return SSMActionExecutor(manager, remote_config)
    return SimulatedActionExecutor()


__all__ = [
    'ActionResult',
    'ActionType',
    'RemoteActionExecutor',
    'SimulatedActionExecutor',
    'SSMActionExecutor',
    'EOD_PHASES',
    'EOD_TASKS',
    'BankingOperations',
    'CommandBankingOperations',
    'SimulatedBankingOperations',
    'create_executor',
]
