# File: isoscan/utils/retry.py
# =============================================================================
# Bounded retry with exponential backoff
# =============================================================================
# Used for the two operations the engine retries locally:
#   - persisting results to the data layer   (collector)
#   - deleting bundles / units during cleanup (collector, sweeper)
#
# Delay for attempt n (1-based) is  base * 2^(n-1), capped at max_delay,
# with up to 25% random jitter so concurrent collectors do not retry in step.
# The last exception is re-raised once attempts are exhausted.
# =============================================================================

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, max_delay: float) -> float:
    delay = min(max_delay, base * (2 ** max(attempt - 1, 0)))
    return delay + random.uniform(0, delay * 0.25)


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn() until it succeeds or `attempts` calls have failed."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{label} failed after {attempts} attempt(s): {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s"
            )
            sleep(delay)

    raise AssertionError("unreachable")
