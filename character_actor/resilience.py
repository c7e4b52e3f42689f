# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Resilience utilities for retry and backoff logic.

This module provides the retry decorator used for orchestrator calls
(registration and action submission).

Key Features:
- Linear (base_delay * attempt) or exponential backoff, capped at max_delay
- Selective retry based on exception type
- Attempt ceiling with a dedicated exhaustion error carrying the last cause
- Per-attempt failure hook for metrics and state bookkeeping
"""

import asyncio
from functools import wraps
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

from character_actor.logging import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar('T')
P = ParamSpec('P')

BACKOFF_LINEAR = "linear"
BACKOFF_EXPONENTIAL = "exponential"


class RetryExhaustedError(Exception):
    """Raised when every allowed attempt of an operation has failed.

    Attributes:
        operation: Human-readable operation name
        attempts: Number of attempts made
        last_error: Exception raised by the final attempt
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        super().__init__(
            f"{operation} failed after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff: str = BACKOFF_LINEAR,
        retryable_exceptions: Optional[tuple[Type[Exception], ...]] = None
    ):
        """Initialize retry configuration.

        Args:
            max_attempts: Total attempts including the first (1 disables retries)
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            backoff: "linear" (base * attempt) or "exponential" (base * 2^(attempt-1))
            retryable_exceptions: Tuple of exception types that should trigger retries.
                                 If None, all exceptions are retryable.

        Raises:
            ValueError: If max_attempts < 1, delays are negative or backoff is unknown
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {max_attempts}")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("retry delays must be >= 0")
        if backoff not in (BACKOFF_LINEAR, BACKOFF_EXPONENTIAL):
            raise ValueError(f"backoff must be 'linear' or 'exponential', got: {backoff}")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff = backoff
        self.retryable_exceptions = retryable_exceptions or (Exception,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the wait after a failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-indexed)

        Returns:
            Delay in seconds, capped at max_delay
        """
        if self.backoff == BACKOFF_EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay * attempt
        return min(delay, self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        """Check if an exception should trigger a retry."""
        return isinstance(exception, self.retryable_exceptions)


def with_retry(
    config: RetryConfig,
    operation_name: str,
    on_failure: Optional[Callable[[int, Exception], None]] = None,
    log: Optional[StructuredLogger] = None
):
    """Decorator to add retry logic to async functions.

    Non-retryable exceptions propagate unchanged on the attempt that raised
    them. When the attempt ceiling is reached, RetryExhaustedError is raised
    with the final exception chained as its cause.

    Args:
        config: RetryConfig specifying retry behavior
        operation_name: Human-readable name for the operation (for logging)
        on_failure: Optional hook called with (attempt, exception) on every failure
        log: Logger to use instead of the module logger

    Returns:
        Decorator function

    Example:
        >>> retry_config = RetryConfig(max_attempts=5, base_delay=2.0)
        >>> @with_retry(retry_config, "register")
        >>> async def register():
        ...     pass
    """
    log = log or logger

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)

                except Exception as e:
                    if on_failure is not None:
                        on_failure(attempt, e)

                    if not config.is_retryable(e):
                        log.warning(
                            f"{operation_name} failed with non-retryable exception",
                            error_type=type(e).__name__,
                            error=str(e),
                            attempt=attempt
                        )
                        raise

                    if attempt >= config.max_attempts:
                        log.error(
                            f"{operation_name} failed after {attempt} attempts",
                            error_type=type(e).__name__,
                            error=str(e),
                            total_attempts=attempt
                        )
                        raise RetryExhaustedError(operation_name, attempt, e) from e

                    delay = config.calculate_delay(attempt)
                    log.warning(
                        f"{operation_name} failed, retrying in {delay:.2f}s",
                        error_type=type(e).__name__,
                        error=str(e),
                        attempt=attempt,
                        max_attempts=config.max_attempts,
                        retry_delay_seconds=delay
                    )

                    await asyncio.sleep(delay)

            raise RuntimeError(f"{operation_name} failed with unknown error")

        return wrapper
    return decorator
