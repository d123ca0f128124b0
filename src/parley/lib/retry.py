"""
Retry logic with capped exponential backoff.

Used for message send retries and as the delay schedule for polling
backoff and persistent reconnects.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from parley.lib.errors import is_retryable


logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float, cap: float, exponential_base: float = 2.0) -> float:
    """Delay after the ``attempt``-th consecutive failure (1-based).

    ``base * exponential_base ** (attempt - 1)``, capped at ``cap``.
    """
    if attempt < 1:
        return 0.0
    return min(base * (exponential_base ** (attempt - 1)), cap)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 4
    base_delay: float = 1.0      # Base delay in seconds
    max_delay: float = 8.0       # Maximum delay in seconds
    exponential_base: float = 2.0
    jitter: bool = False         # Add random jitter to delays

    @classmethod
    def from_milliseconds(cls, max_attempts: int, base_ms: int, max_ms: int, jitter: bool = False) -> "RetryConfig":
        return cls(
            max_attempts=max_attempts,
            base_delay=base_ms / 1000,
            max_delay=max_ms / 1000,
            jitter=jitter,
        )


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts. Last error: {last_exception}")


class RetryHandler:
    """Retry handler with capped exponential backoff.

    Only errors accepted by ``retryable`` are retried; any other error is
    raised unchanged on the attempt that produced it.
    """

    def __init__(
        self,
        config: RetryConfig,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_attempt: Optional[Callable[[int, Optional[BaseException]], None]] = None,
    ):
        self.config = config
        self.retryable = retryable
        self._sleep = sleep
        self._on_attempt = on_attempt

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given failed attempt number."""
        delay = backoff_delay(attempt, self.config.base_delay, self.config.max_delay, self.config.exponential_base)

        if self.config.jitter:
            # Add ±25% jitter
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    def schedule(self):
        """Delays waited between attempts, in order."""
        return [self.calculate_delay(attempt) for attempt in range(1, self.config.max_attempts)]

    async def call(self, func: Callable[[], Awaitable[Any]], operation_name: str = "unknown") -> Any:
        """Execute ``func`` with retry logic."""
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = await func()
            except Exception as e:
                if self._on_attempt:
                    self._on_attempt(attempt, e)
                if not self.retryable(e):
                    raise
                last_exception = e

                # Don't retry on final attempt
                if attempt == self.config.max_attempts:
                    break

                delay = self.calculate_delay(attempt)
                logger.debug(f"{operation_name} attempt {attempt} failed ({e}); retrying in {delay:.1f}s")
                await self._sleep(delay)
            else:
                if self._on_attempt:
                    self._on_attempt(attempt, None)
                return result

        raise RetryError(self.config.max_attempts, last_exception)
