"""Opt-in retry policy with exponential backoff for provider calls."""

import time
import random
from typing import Callable, TypeVar, Optional

from vmship.utils.errors import ProviderError
from vmship.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryPolicy:
    """Bounded exponential backoff for idempotent provider calls.

    Only errors flagged ``retryable`` are retried. A policy with
    ``max_attempts=1`` never retries; executors use no policy at all
    unless one is configured.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Total number of attempts, including the first one
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Sleep function, replaceable in tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger another attempt.

        Args:
            error: The exception that occurred
            attempt: Number of attempts made so far (1-indexed)

        Returns:
            True if the error is retryable and attempts remain
        """
        if attempt >= self.max_attempts:
            return False
        return isinstance(error, ProviderError) and error.retryable

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Number of attempts made so far (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

        # Up to 10% random jitter
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute(
        self,
        func: Callable[[], T],
        on_attempt: Optional[Callable[[int], None]] = None
    ) -> T:
        """Execute a zero-argument callable with retry logic.

        Args:
            func: Callable to execute
            on_attempt: Optional callback receiving the attempt number before each call

        Returns:
            Result of the call

        Raises:
            The last exception if it is not retryable or attempts are exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            if on_attempt:
                on_attempt(attempt)
            try:
                result = func()
                if attempt > 1:
                    logger.info(f"Operation succeeded after {attempt} attempts")
                return result
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)
