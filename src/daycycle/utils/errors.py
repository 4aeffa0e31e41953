"""Error hierarchy for SOD/EOD operations and translation of transport errors."""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)

from daycycle.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """What kind of thing went wrong."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    SCHEDULING = "scheduling"
    STATE = "state"
    CANCELLED = "cancelled"
    REMOTE = "remote"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    CRITICAL = "critical"  # operation cannot continue
    ERROR = "error"  # step failed
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorContext:
    """Where an error happened."""
    operation_id: Optional[str] = None
    operation_type: Optional[str] = None
    step_name: Optional[str] = None
    service_name: Optional[str] = None
    host: Optional[str] = None
    action: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None

    def labelled(self) -> List[Tuple[str, str]]:
        """Non-empty location fields as (label, value) pairs for display."""
        pairs = [
            ("Operation", self.operation_id),
            ("Step", self.step_name),
            ("Service", self.service_name),
            ("Host", self.host),
            ("Action", self.action),
        ]
        return [(label, value) for label, value in pairs if value]

    def log_extra(self) -> Dict[str, Any]:
        """Fields picked up by the structured log formatters."""
        extra = {}
        if self.operation_id:
            extra['operation_id'] = self.operation_id
        if self.service_name:
            extra['service'] = self.service_name
        if self.step_name:
            extra['step'] = self.step_name
        return extra


class OrchestrationError(Exception):
    """Base class for every error daycycle raises on purpose.

    Subclasses fix their category and severity as class attributes; both
    can still be overridden per instance.
    """

    category = ErrorCategory.UNKNOWN
    severity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize orchestration error.

        Args:
            message: Human-readable error message
            category: Overrides the class category
            severity: Overrides the class severity
            context: Where the error happened
            cause: Underlying exception
            suggestions: Fixes to offer the operator
        """
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        if severity is not None:
            self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        lines = [f"{self.severity.value.upper()}: {self.message}"]
        lines.extend(f"   {label}: {value}" for label, value in self.context.labelled())
        if self.cause is not None:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("")
            lines.append("Suggested fixes:")
            lines.extend(f"   {i}. {tip}" for i, tip in enumerate(self.suggestions, 1))
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause is not None else None,
            'suggestions': list(self.suggestions),
        }


class ConfigurationError(OrchestrationError):
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


class ValidationError(OrchestrationError):
    """Pre-condition not met; blocks the operation unless execution is forced."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class DependencyError(OrchestrationError):
    """Missing or disabled dependency, or a dependency cycle. Never forced through."""

    category = ErrorCategory.DEPENDENCY
    severity = ErrorSeverity.CRITICAL


class ExecutionError(OrchestrationError):
    """A remote action failed while executing an operation."""

    category = ErrorCategory.EXECUTION


class OperationTimeoutError(OrchestrationError):
    """A polling ceiling was exceeded."""

    category = ErrorCategory.TIMEOUT
    severity = ErrorSeverity.CRITICAL


class SchedulingError(OrchestrationError):
    """Invalid recurrence expression or time zone, or an illegal schedule change."""

    category = ErrorCategory.SCHEDULING


class StateError(OrchestrationError):
    """Illegal state transition or unreadable state store."""

    category = ErrorCategory.STATE
    severity = ErrorSeverity.CRITICAL


class OperationNotFoundError(StateError):
    """Requested operation or schedule does not exist."""

    severity = ErrorSeverity.ERROR


class OperationCancelledError(OrchestrationError):
    """Raised at a cancellation checkpoint once cancellation was requested."""

    category = ErrorCategory.CANCELLED
    severity = ErrorSeverity.WARNING


class RemoteActionError(OrchestrationError):
    """A remote transport call failed."""

    category = ErrorCategory.REMOTE


@dataclass(frozen=True)
class AwsErrorHint:
    category: ErrorCategory
    summary: str
    suggestions: List[str] = field(default_factory=list)


_EXPIRED = AwsErrorHint(
    ErrorCategory.CREDENTIAL,
    'AWS session token has expired',
    ['Refresh the session credentials', 'Re-authenticate with your identity provider'],
)
_INVALID_CREDENTIALS = AwsErrorHint(
    ErrorCategory.CREDENTIAL,
    'AWS credentials were rejected',
    ['Check the access key of remote.profile', 'Confirm the key has not been deactivated'],
)

# Error codes returned by Systems Manager and STS
AWS_ERROR_HINTS: Dict[str, AwsErrorHint] = {
    'InvalidInstanceId': AwsErrorHint(
        ErrorCategory.REMOTE,
        'Target host is not a managed instance or is not online',
        [
            'Check that the SSM agent is running on the host',
            'Verify the instance_id configured for the service',
            'Confirm the instance is registered in the configured region',
        ],
    ),
    'InvalidDocument': AwsErrorHint(
        ErrorCategory.CONFIGURATION,
        'SSM document does not exist or is not accessible',
        ['Check remote.document_name', 'Verify the document is shared with this account'],
    ),
    'InvocationDoesNotExist': AwsErrorHint(
        ErrorCategory.REMOTE,
        'Command invocation is not registered',
        ['The command may have expired; resend it'],
    ),
    'AccessDeniedException': AwsErrorHint(
        ErrorCategory.PERMISSION,
        'Access denied',
        [
            'Grant ssm:SendCommand, ssm:GetCommandInvocation and ssm:CancelCommand to the caller',
            'Check resource-based policies on the target instances',
        ],
    ),
    'ThrottlingException': AwsErrorHint(
        ErrorCategory.REMOTE,
        'API rate limit exceeded',
        ['Lower orchestration.max_workers', 'Raise remote.max_retries'],
    ),
    'ExpiredToken': _EXPIRED,
    'ExpiredTokenException': _EXPIRED,
    'InvalidClientTokenId': _INVALID_CREDENTIALS,
    'UnrecognizedClientException': _INVALID_CREDENTIALS,
}

_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.ERROR,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.INFO: logging.INFO,
}


class ErrorHandler:
    """Turns arbitrary exceptions into categorized OrchestrationErrors."""

    def handle_exception(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None
    ) -> OrchestrationError:
        """Categorize an exception.

        Args:
            error: The exception to translate
            context: Where it happened

        Returns:
            The error itself when it already is an OrchestrationError,
            otherwise a new one wrapping it as the cause
        """
        if isinstance(error, OrchestrationError):
            return error

        context = context or ErrorContext()

        if isinstance(error, ClientError):
            return self._from_client_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return OrchestrationError(
                f"AWS credential error: {error}",
                category=ErrorCategory.CREDENTIAL,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                cause=error,
                suggestions=[
                    'Run aws configure or export AWS credentials',
                    'Set remote.profile in the configuration',
                ],
            )

        if isinstance(error, (ConnectionError, TimeoutError, EndpointConnectionError)):
            return RemoteActionError(
                f"Network error: {error}",
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error,
                suggestions=['Check connectivity to the host or the AWS endpoint'],
            )

        return OrchestrationError(
            str(error) or type(error).__name__,
            context=context,
            cause=error,
            suggestions=['Check the log file for the full traceback'],
        )

    def _from_client_error(self, error: ClientError, context: ErrorContext) -> RemoteActionError:
        details = error.response.get('Error', {})
        code = details.get('Code', 'Unknown')
        aws_message = details.get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        hint = AWS_ERROR_HINTS.get(code)
        if hint is None:
            return RemoteActionError(
                f"AWS Error ({code}): {aws_message}",
                context=context,
                cause=error,
                suggestions=[f"Look up {code} for request {context.request_id} in the AWS documentation"],
            )

        return RemoteActionError(
            f"{hint.summary}: {aws_message}",
            category=hint.category,
            context=context,
            cause=error,
            suggestions=list(hint.suggestions),
        )

    def log_error(self, error: OrchestrationError) -> None:
        extra = error.context.log_extra()
        logger.log(_LOG_LEVELS[error.severity], error.to_user_message(), extra=extra)
        logger.debug(f"Error details: {error.to_dict()}", extra=extra)


error_handler = ErrorHandler()
