"""Shared error, logging, retry and AWS plumbing."""

from daycycle.utils.aws_client import AWSClientManager, CallerIdentity
from daycycle.utils.errors import (
    ConfigurationError,
    DependencyError,
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    ExecutionError,
    OperationCancelledError,
    OperationNotFoundError,
    OperationTimeoutError,
    OrchestrationError,
    RemoteActionError,
    SchedulingError,
    StateError,
    ValidationError,
    error_handler,
)
from daycycle.utils.logging import get_logger, setup_logging
from daycycle.utils.retry import RetryStrategy, with_retry

__all__ = [
    'AWSClientManager',
    'CallerIdentity',
    'ConfigurationError',
    'DependencyError',
    'ErrorCategory',
    'ErrorContext',
    'ErrorHandler',
    'ErrorSeverity',
    'ExecutionError',
    'OperationCancelledError',
    'OperationNotFoundError',
    'OperationTimeoutError',
    'OrchestrationError',
    'RemoteActionError',
    'SchedulingError',
    'StateError',
    'ValidationError',
    'error_handler',
    'get_logger',
    'setup_logging',
    'RetryStrategy',
    'with_retry',
]
