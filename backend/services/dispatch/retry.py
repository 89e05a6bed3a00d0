"""Retry-with-backoff combinator used around the notification transport."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from .exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How hard to try a fallible call.

    Attributes:
        attempts: Total number of attempts (not retries)
        base_delay: Wait before the second attempt; doubles after each failure
        timeout: Per-attempt timeout in seconds, handed to the call itself
    """
    attempts: int = 3
    base_delay: float = 1.0
    timeout: float = 10.0

    def delay_before(self, attempt: int) -> float:
        """Backoff to wait before ``attempt`` (2-based; attempt 1 never waits)."""
        return self.base_delay * (2 ** (attempt - 2))


def call_with_retry(
    func: Callable[[float], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "call",
) -> T:
    """
    Call ``func(timeout)`` until it returns or ``policy.attempts`` is used up.

    Args:
        func: Callable taking the per-attempt timeout
        policy: Attempts, backoff and timeout to apply
        retry_on: Exception types that count as a failed attempt; anything
            else propagates immediately
        sleep: Backoff sleep, replaceable in tests
        description: Used in log messages

    Returns:
        Whatever ``func`` returned on the first successful attempt

    Raises:
        RetryExhaustedError: Chained to the error of the last attempt
    """
    if policy.attempts < 1:
        raise ValueError("RetryPolicy.attempts must be at least 1")

    for attempt in range(1, policy.attempts + 1):
        if attempt > 1:
            sleep(policy.delay_before(attempt))
        try:
            return func(policy.timeout)
        except retry_on as exc:
            logger.warning(
                "Attempt %d/%d failed for %s: %s",
                attempt, policy.attempts, description, exc,
            )
            if attempt == policy.attempts:
                raise RetryExhaustedError(policy.attempts, exc) from exc
