"""Retry policies and bounded exponential backoff."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ExhaustionAction(Enum):
    """What a connection does once its bounded attempts are used up."""
    FATAL = "fatal"
    BACKGROUND_RETRY_FOREVER = "background_retry_forever"


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry policy attached to a connection at construction."""
    max_attempts: int
    interval_ms: int
    on_exhaustion: ExhaustionAction
    backoff_multiplier: float = 1.0
    max_interval_ms: Optional[int] = None

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before the attempt following failed ``attempt`` (1-based)."""
        delay_ms = self.interval_ms * (self.backoff_multiplier ** max(attempt - 1, 0))
        if self.max_interval_ms is not None:
            delay_ms = min(delay_ms, self.max_interval_ms)
        return delay_ms / 1000.0


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    exceptions: tuple = (Exception,),
    operation: str = "operation",
    on_failure: Optional[Callable[[int, BaseException], Any]] = None
) -> T:
    """
    Execute an async function under a bounded retry policy.

    Args:
        func: Async function to execute
        policy: Attempt budget and spacing
        exceptions: Tuple of exceptions to catch and retry on
        operation: Name used in log records
        on_failure: Optional hook called with (attempt, error) after each failure

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all attempts fail
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            if on_failure is not None:
                on_failure(attempt, e)

            if attempt == policy.max_attempts:
                logger.error(
                    f"{operation} failed after {policy.max_attempts} attempts: {e}",
                    extra={"ctx_operation": operation, "ctx_attempt": attempt}
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation}: attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f} seconds...",
                extra={"ctx_operation": operation, "ctx_attempt": attempt}
            )
            await asyncio.sleep(delay)

    raise ValueError("RetryPolicy.max_attempts must be at least 1")
