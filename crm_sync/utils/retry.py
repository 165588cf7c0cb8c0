"""
Retry helper with exponential backoff.

Every remote CRM call and every batch write in crm_sync goes through
retry_with_backoff(). A failed attempt is retried after 1s, 2s, 4s...
unless the raised exception carries an explicit ``retry_after`` hint
(for example a CRM 429 response with a Retry-After header), in which
case the hint is used instead.
"""

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

# Retry configuration defaults
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Base class for errors that are worth retrying.

    Attributes:
        retry_after: Optional wait hint in seconds supplied by the remote side
    """

    def __init__(self, message: str = "", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


def compute_delay(
    attempt: int,
    initial_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
    max_delay: float = DEFAULT_MAX_RETRY_DELAY,
) -> float:
    """
    Compute the backoff delay before the next attempt.

    Args:
        attempt: Zero-based index of the attempt that just failed
        initial_delay: Delay after the first failure
        max_delay: Upper bound for the delay

    Returns:
        Delay in seconds (initial_delay * 2**attempt, capped at max_delay)
    """
    return min(initial_delay * (2**attempt), max_delay)


def retry_with_backoff(
    operation: Callable[[], T],
    operation_name: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
    max_delay: float = DEFAULT_MAX_RETRY_DELAY,
    retry_on: tuple[type[BaseException], ...] = (RetryableError,),
) -> T:
    """
    Execute an operation with exponential backoff retry.

    Args:
        operation: Callable to execute
        operation_name: Name for logging purposes
        max_attempts: Total number of attempts, including the first one
        initial_delay: Delay in seconds after the first failed attempt
        max_delay: Maximum delay between attempts
        retry_on: Exception types that trigger a retry. Anything else
            propagates immediately.

    Returns:
        Result of the operation

    Raises:
        The last exception raised by the operation once attempts are
        exhausted, or any exception not listed in retry_on.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(max_attempts):
        try:
            return operation()
        except retry_on as e:
            if attempt >= max_attempts - 1:
                logger.error(
                    f"{operation_name} failed after {max_attempts} attempts: {e}"
                )
                raise

            hint: Any = getattr(e, "retry_after", None)
            if hint is not None:
                delay = float(hint)
            else:
                delay = compute_delay(attempt, initial_delay, max_delay)

            logger.warning(
                f"{operation_name} failed ({e}), retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{max_attempts})"
            )
            time.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{operation_name} failed after all retries")
