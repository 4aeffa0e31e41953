"""Cron-driven scheduling of SOD and EOD operations."""

from .cron import next_execution_time, validate_cron_expression, validate_time_zone
from .scheduler import SYSTEM_SCHEDULER, OperationScheduler, TickResult

__all__ = [
    'next_execution_time',
    'validate_cron_expression',
    'validate_time_zone',
    'SYSTEM_SCHEDULER',
    'OperationScheduler',
    'TickResult',
]
