"""Retry utilities with exponential backoff."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .http_client import GrifoTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 0.2  # seconds
    max_delay: float = 5.0  # seconds
    factor: float = 2.0
    jitter: bool = False  # Add randomness to prevent thundering herd

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def calculate_delay(
    attempt: int,
    initial_delay: float = 0.2,
    max_delay: float = 5.0,
    factor: float = 2.0,
    jitter: bool = False,
) -> float:
    """Calculate delay for a retry attempt with exponential backoff.

    Args:
        attempt: Number of the failed attempt (0-indexed)
        initial_delay: Delay after the first failure in seconds
        max_delay: Maximum delay cap
        factor: Multiplier applied after each failure
        jitter: Whether to add random jitter

    Returns:
        Delay in seconds
    """
    delay = initial_delay * (factor ** attempt)
    delay = min(delay, max_delay)

    if jitter:
        # Add +/- 25% jitter
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


def with_retry(
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (GrifoTransientError,),
    sleep: Callable[[float], None] = time.sleep,
    label: Optional[str] = None,
) -> T:
    """Execute an idempotent operation with exponential backoff retry.

    Attempt 0 runs immediately; at most ``config.max_retries`` retries
    follow. Exceptions outside ``retryable_exceptions`` propagate at once.

    Args:
        operation: Function to execute
        config: Retry configuration
        on_retry: Callback called before each retry (attempt, error, delay)
        retryable_exceptions: Tuple of exceptions that should trigger retry
        sleep: Sleep function (injectable for tests)
        label: Name of the operation for log messages

    Returns:
        Result of successful function call

    Raises:
        Exception: The last error once all attempts are exhausted, or the
            first non-retryable error
    """
    if config is None:
        config = RetryConfig()

    name = label or getattr(operation, "__name__", "operation")

    for attempt in range(max(config.max_attempts, 1)):
        try:
            return operation()
        except retryable_exceptions as e:
            if attempt >= config.max_retries:
                logger.warning(
                    f"{name}: attempt {attempt + 1}/{config.max_attempts} failed: {e}. "
                    f"Giving up."
                )
                raise

            delay = calculate_delay(
                attempt,
                config.initial_delay,
                config.max_delay,
                config.factor,
                config.jitter,
            )

            logger.warning(
                f"{name}: attempt {attempt + 1}/{config.max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)

            sleep(delay)
