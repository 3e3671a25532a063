"""
Bounded retry combinator.

An attempt reports a lost race by returning None instead of raising, so
contention never travels through exception handling. Real errors raised by
an attempt propagate unchanged.
"""

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from ..errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_bounded(
    attempt: Callable[[int], T | None],
    max_attempts: int,
    jitter_ms: int = 0,
    exhausted: type[RetryExhaustedError] = RetryExhaustedError,
    sleep: Callable[[float], None] = time.sleep,
    jitter: Callable[[float, float], float] = random.uniform,
) -> T:
    """
    Call `attempt` until it returns a value.

    Args:
        attempt: Called with the 1-based attempt number; None means "retry"
        max_attempts: Upper bound on calls
        jitter_ms: Sleep a random 0..jitter_ms milliseconds between calls
        exhausted: Error type raised when all attempts returned None

    Returns:
        The first non-None result

    Raises:
        exhausted: After max_attempts calls without a result
    """
    for number in range(1, max_attempts + 1):
        result = attempt(number)
        if result is not None:
            return result
        if number < max_attempts:
            logger.debug(f"Attempt {number}/{max_attempts} lost a race, retrying")
            if jitter_ms > 0:
                sleep(jitter(0, jitter_ms) / 1000.0)
    raise exhausted(max_attempts)
