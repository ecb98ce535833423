"""Bounded retry with exponential backoff for hostplay.

Only transient connection failures (timeouts, refused connections,
unreachable hosts) are retried. Authentication failures and every other
error propagate on the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .exceptions import ConnectionError, ErrorTypes

logger = logging.getLogger(__name__)


TRANSIENT_ERRORS = {
    ErrorTypes.CONNECTION_TIMEOUT,
    ErrorTypes.CONNECTION_REFUSED,
    ErrorTypes.HOST_UNREACHABLE,
}


def is_transient_error(exc: BaseException) -> bool:
    """Check if an exception is worth retrying."""
    return isinstance(exc, ConnectionError) and exc.error_type in TRANSIENT_ERRORS


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Number of retries after the first attempt (0 = no retries)
        initial_delay: Delay before the first retry in seconds
        max_delay: Cap for the backoff delay
        backoff_factor: Multiplier applied per attempt
        jitter: Add +/-10% jitter to each delay
    """

    max_attempts: int = 0
    initial_delay: float = 5.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.initial_delay * (self.backoff_factor ** max(attempt - 1, 0))
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += delay * 0.1 * (random.random() * 2 - 1)
        return max(0.0, delay)


@dataclass
class RetryState:
    """Tracks attempts made for one host."""

    host_name: str
    attempts: int = 0
    last_error: str = ""
    succeeded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "host_name": self.host_name,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "succeeded": self.succeeded,
        }


async def retry_with_backoff(
    factory: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    host_name: str = "",
    state: RetryState | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> Any:
    """Await ``factory()`` until it succeeds or retries are exhausted.

    Args:
        factory: Callable returning a fresh awaitable for each attempt
        config: Retry configuration
        host_name: Host name for logging
        state: Optional RetryState updated in place
        on_retry: Called with (attempt, error, delay) before each wait

    Returns:
        The result of the first successful attempt

    Raises:
        The last exception when it is not transient or attempts run out
    """
    state = state or RetryState(host_name=host_name)
    total_attempts = config.max_attempts + 1

    for attempt in range(1, total_attempts + 1):
        state.attempts = attempt
        try:
            result = await factory()
        except Exception as e:
            state.last_error = str(e)
            if attempt >= total_attempts or not is_transient_error(e):
                raise
            delay = config.get_delay(attempt)
            logger.info(
                f"Retry {attempt}/{config.max_attempts} for {host_name}: "
                f"{e} - waiting {delay:.1f}s"
            )
            if on_retry:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
        else:
            state.succeeded = True
            return result

    raise AssertionError("unreachable")
