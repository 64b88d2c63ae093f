"""Retry helpers for transient storage failures."""

import time
import random
from typing import Callable, Any, Optional, List, Type
from functools import wraps

from .exceptions import WorkflowEngineError, StorageError
from .logging import RetryLogger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        # Check if exception is retryable
        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False

        # Not-found and state-transition errors are permanent even when their class is listed
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Spread out concurrent retries
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    retry_logger = RetryLogger(func.__name__)

    attempt = 0
    while True:
        attempt += 1
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                # Only report giving up when a retry was actually attempted
                if attempt > 1:
                    retry_logger.gave_up(e, attempt)
                raise

            # Back off before the next attempt
            delay = config.get_delay(attempt)
            retry_logger.retrying(e, attempt, config.max_attempts, delay)
            time.sleep(delay)
