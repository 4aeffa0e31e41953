"""AWS Systems Manager Run Command executor."""

import time
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from daycycle.config.models import RemoteConfig, ServiceDefinition
from daycycle.utils.aws_client import AWSClientManager
from daycycle.utils.errors import ErrorContext, error_handler
from daycycle.utils.logging import get_logger
from daycycle.utils.retry import RetryStrategy

from .base import ActionResult, ActionType, RemoteActionExecutor

logger = get_logger(__name__)

# Invocation states that mean the command is still running
IN_PROGRESS_STATUSES = {'Pending', 'InProgress', 'Delayed'}


class SSMActionExecutor(RemoteActionExecutor):
    """Runs service actions through ssm:SendCommand on the service's instance."""

    def __init__(
        self,
        client_manager: AWSClientManager,
        remote_config: Optional[RemoteConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize SSM executor.

        Args:
            client_manager: Source of the pooled ssm client
            remote_config: Document name, command templates, polling and retry settings
            clock: Monotonic clock used for command deadlines
            sleep: Function used to wait between status polls and retries
        """
        self.config = remote_config or RemoteConfig(executor='ssm')
        self.ssm = client_manager.get_client('ssm')
        self.clock = clock
        self.sleep = sleep
        self.retry = RetryStrategy(max_retries=self.config.max_retries, sleep=sleep)

    def execute(
        self,
        service: ServiceDefinition,
        action: ActionType,
        timeout: float
    ) -> ActionResult:
        action = ActionType(action)
        if not service.instance_id:
            return ActionResult(
                success=False,
                error=f"Service {service.name} has no instance_id configured for SSM"
            )

        command = self.config.commands[action.value].format(name=service.name, host=service.host)
        logger.info(f"{action.value} via SSM on {service.host}", extra={'service': service.name})
        return self.run_command(service.host, service.instance_id, command, timeout)

    def run_command(
        self,
        host: str,
        instance_id: Optional[str],
        command: str,
        timeout: float
    ) -> ActionResult:
        if not instance_id:
            return ActionResult(success=False, error=f"Host {host} has no instance_id configured for SSM")

        context = ErrorContext(host=host, action='ssm:SendCommand')
        try:
            response = self.retry.execute_with_retry(
                self.ssm.send_command,
                InstanceIds=[instance_id],
                DocumentName=self.config.document_name,
                Parameters={
                    'commands': [command],
                    'executionTimeout': [str(int(timeout))],
                },
                TimeoutSeconds=max(30, int(timeout)),
                Comment=f"daycycle: {command}"[:100],
            )
            command_id = response['Command']['CommandId']
            return self._wait_for_invocation(command_id, instance_id, timeout)
        except (ClientError, BotoCoreError) as e:
            error = error_handler.handle_exception(e, context)
            error_handler.log_error(error)
            return ActionResult(success=False, error=error.message)

    def _wait_for_invocation(self, command_id: str, instance_id: str, timeout: float) -> ActionResult:
        """Poll a command invocation until it finishes or the deadline passes.

        Args:
            command_id: SSM command id
            instance_id: Instance the command was sent to
            timeout: Seconds to wait

        Returns:
            ActionResult built from the invocation's output
        """
        deadline = self.clock() + timeout

        while True:
            invocation = self.retry.execute_with_retry(
                self.ssm.get_command_invocation,
                CommandId=command_id,
                InstanceId=instance_id,
            )
            status = invocation.get('Status', 'Pending')

            if status not in IN_PROGRESS_STATUSES:
                output = invocation.get('StandardOutputContent', '')
                if status == 'Success':
                    return ActionResult(success=True, output=output)
                error_text = invocation.get('StandardErrorContent') or status
                return ActionResult(success=False, output=output, error=f"{status}: {error_text}")

            if self.clock() >= deadline:
                logger.warning(f"SSM command {command_id} exceeded {timeout}s, cancelling")
                self.ssm.cancel_command(CommandId=command_id, InstanceIds=[instance_id])
                return ActionResult(success=False, error=f"Timed out after {timeout}s")

            self.sleep(self.config.poll_interval)
