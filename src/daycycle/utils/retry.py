"""Backoff and retry for transient remote-call failures."""

import itertools
import random
import time
from functools import wraps
from typing import Callable, Optional, TypeVar

from botocore.exceptions import ClientError, EndpointConnectionError

from daycycle.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

# Rejected for rate or capacity
THROTTLING_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'TooManyRequestsException',
    'RequestLimitExceeded',
})

# Service-side failures that clear on their own
TRANSIENT_SERVICE_CODES = frozenset({
    'RequestTimeout',
    'ServiceUnavailable',
    'InternalError',
    'InternalServerError',
    # SSM registers an invocation shortly after SendCommand returns
    'InvocationDoesNotExist',
})

TRANSIENT_EXCEPTIONS = (ConnectionError, TimeoutError, EndpointConnectionError)


def error_code(error: Exception) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


def is_transient(error: Exception) -> bool:
    """Whether a failed call is worth repeating unchanged."""
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True
    code = error_code(error)
    return code in THROTTLING_CODES or code in TRANSIENT_SERVICE_CODES


def describe_error(error: Exception) -> str:
    if isinstance(error, ClientError):
        details = error.response.get('Error', {})
        return f"{details.get('Code', 'Unknown')}: {details.get('Message', error)}"
    return f"{type(error).__name__}: {error}"


class RetryStrategy:
    """Repeats a call that failed transiently, backing off exponentially.

    A strategy keeps no per-call state, so worker threads can share one.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Retries after the first attempt
            base_delay: Seconds to wait after the first failure
            max_delay: Upper bound on any single wait
            exponential_base: Growth factor of the wait per attempt
            jitter: Add up to 10% random spread to each wait
            sleep: Wait function, replaced by tests
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        return attempt < self.max_retries and is_transient(error)

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (0-indexed)."""
        delay = min(self.base_delay * self.exponential_base ** attempt, self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.1
        return delay

    def execute_with_retry(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call func until it succeeds or stops being worth retrying.

        Args:
            func: Callable to invoke
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            The first successful result

        Raises:
            Exception: The last error func raised
        """
        name = getattr(func, '__name__', type(func).__name__)
        for attempt in itertools.count():
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt:
                        logger.error(f"{name} gave up after {attempt + 1} attempts: {describe_error(e)}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"{name} attempt {attempt + 1}/{self.max_retries + 1} failed "
                    f"({describe_error(e)}); retrying in {delay:.2f}s"
                )
                self.sleep(delay)


def with_retry(**options) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of RetryStrategy.

    Args:
        **options: RetryStrategy keyword arguments

    Example:
        @with_retry(max_retries=3, base_delay=0.5)
        def _caller_identity(self):
            return self.get_client('sts').get_caller_identity()
    """
    strategy = RetryStrategy(**options)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
