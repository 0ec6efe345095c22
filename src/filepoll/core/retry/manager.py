"""
Retry manager for executing coroutines with exponential backoff.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from filepoll.core.retry.policy import LISTING_RETRY_POLICY, RetryPolicy, RetryState
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.retry.manager")

T = TypeVar("T")


class RetryManager:
    """
    Wraps an async callable with retry logic based on RetryPolicy.

    Examples:
        >>> manager = RetryManager()
        >>> files = await manager.execute(adapter.list_files, request, policy=LISTING_RETRY_POLICY)
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] | None = None):
        """
        Initialize RetryManager.

        Args:
            sleep: Coroutine used to wait between attempts (defaults to asyncio.sleep)
        """
        self._sleep = sleep or asyncio.sleep

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        policy: RetryPolicy | None = None,
        operation: str | None = None,
        state: RetryState | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Execute async function with retry logic.

        Args:
            func: Async function to execute
            *args: Positional arguments to pass to func
            policy: Retry policy (defaults to LISTING_RETRY_POLICY)
            operation: Name used in log lines
            state: Optional RetryState to record attempts into
            **kwargs: Keyword arguments to pass to func

        Returns:
            Result of successful execution

        Raises:
            Exception: Final exception after all retries exhausted, or the first
                non-retryable one
        """
        policy = policy or LISTING_RETRY_POLICY
        state = state or RetryState(operation=operation or getattr(func, "__name__", "operation"))

        for attempt in range(policy.max_attempts + 1):
            state.attempt = attempt

            try:
                logger.debug(f"Executing {state.operation} (attempt {attempt + 1}/{policy.max_attempts + 1})")
                result = await func(*args, **kwargs)
                state.record_attempt()
                state.mark_success()
                if attempt > 0:
                    logger.info(f"{state.operation} succeeded after {attempt + 1} attempts")
                return result

            except Exception as e:
                state.record_attempt(exception=e)

                if not policy.should_retry(e, attempt):
                    state.mark_failure(e)
                    logger.warning(f"{state.operation} failed after {attempt + 1} attempt(s): {e}")
                    raise

                delay = policy.get_delay(attempt)
                state.record_delay(delay)
                logger.warning(f"{state.operation} attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s...")
                await self._sleep(delay)

        # Should not reach here, but just in case
        raise RuntimeError(f"Retry logic error for {state.operation}")
