"""
Retry policy configuration for protocol listings.

Exponential backoff with jitter for transient failures inside one execution.
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from filepoll.exceptions import NetworkError


@dataclass
class RetryPolicy:
    """
    Configuration for retry behavior when an operation fails.

    Implements exponential backoff with jitter for handling transient failures.

    Examples:
        >>> # Three attempts in total, retrying network errors only
        >>> policy = RetryPolicy(max_attempts=2, retryable_exceptions=(NetworkError,))

        >>> # Tight policy for tests
        >>> policy = RetryPolicy(max_attempts=2, initial_delay=0.01, max_delay=0.01, jitter=False)
    """

    # Maximum number of retry attempts (total executions = max_attempts + 1)
    max_attempts: int = 2

    # Initial delay before first retry (seconds)
    initial_delay: float = 2.0

    # Maximum delay between retries (seconds)
    max_delay: float = 10.0

    # Exponential backoff base (delay = initial_delay * base^attempt)
    exponential_base: float = 2.0

    # Add random jitter to prevent thundering herd (±25% of delay)
    jitter: bool = True

    # Only retry these exception types (None = retry all exceptions)
    retryable_exceptions: tuple[type[Exception], ...] | None = None

    # Custom retry condition: (exception, attempt) -> bool
    retry_condition: Callable[[Exception, int], bool] | None = None

    def __post_init__(self):
        """Validate configuration."""
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be >= 1.0")

    @property
    def total_attempts(self) -> int:
        return self.max_attempts + 1

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """
        Determine if we should retry after this exception.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if we should retry, False otherwise
        """
        if attempt >= self.max_attempts:
            return False

        # Custom retry condition takes precedence
        if self.retry_condition is not None:
            return self.retry_condition(exception, attempt)

        if self.retryable_exceptions is not None:
            return isinstance(exception, self.retryable_exceptions)

        return True

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before next retry using exponential backoff.

        Implements: delay = min(initial_delay * base^attempt, max_delay)
        With optional jitter: delay * random(0.75, 1.25)

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = self.initial_delay * (self.exponential_base**attempt)

        if self.jitter:
            delay *= random.uniform(0.75, 1.25)

        # Cap after jitter so max_delay is a hard upper bound
        return min(delay, self.max_delay)


@dataclass
class RetryState:
    """
    State tracking for retry execution.

    Callers pass one in to learn how many attempts an operation needed.
    """

    operation: str
    attempt: int = 0
    total_attempts: int = 0
    exceptions: list[dict[str, Any]] = field(default_factory=list)
    delays: list[float] = field(default_factory=list)
    succeeded: bool = False
    final_exception: Exception | None = None

    @property
    def retries(self) -> int:
        return max(0, self.total_attempts - 1)

    def record_attempt(self, exception: Exception | None = None) -> None:
        """Record an attempt and its result."""
        self.total_attempts += 1
        if exception is not None:
            self.exceptions.append(
                {
                    "attempt": self.attempt,
                    "exception_type": type(exception).__name__,
                    "exception_message": str(exception),
                    "timestamp": time.time(),
                }
            )

    def record_delay(self, delay: float) -> None:
        self.delays.append(delay)

    def mark_success(self) -> None:
        self.succeeded = True

    def mark_failure(self, exception: Exception) -> None:
        self.succeeded = False
        self.final_exception = exception


# Listing retry: three attempts in total, network errors only
LISTING_RETRY_POLICY = RetryPolicy(
    max_attempts=2,
    initial_delay=2.0,
    max_delay=10.0,
    exponential_base=2.0,
    jitter=True,
    retryable_exceptions=(NetworkError,),
)

NO_RETRY_POLICY = RetryPolicy(max_attempts=0)
