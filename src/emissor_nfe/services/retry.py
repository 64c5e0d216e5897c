from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from emissor_nfe.services.exceptions import ProcessorTimeout, ProcessorUnavailable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]


# Status and service queries are idempotent. Submit, cancel and void-range
# are never retried: a timed-out submission may still have been received.
QUERY = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(ProcessorTimeout, ProcessorUnavailable),
)


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate delay with exponential backoff and jitter.

    *attempt* is 0-indexed (0 = delay after first failure).
    """
    delay = policy.base_delay * (policy.backoff_factor**attempt)
    delay = min(delay, policy.max_delay)
    jitter_range = delay * policy.jitter
    delay += random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str = "processor call",
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Execute *func()* with retry per *policy*, re-raising on exhaustion.

    *label* names the operation in retry warnings.
    """
    last_exc: Exception | None = None
    for attempt in range(policy.max_attempts):
        try:
            return func()
        except policy.retryable_exceptions as exc:
            last_exc = exc
            if attempt < policy.max_attempts - 1:
                delay = _calc_delay(attempt, policy)
                logger.warning(
                    "%s: retry %d/%d after %s: %s (%.1fs delay)",
                    label,
                    attempt + 1,
                    policy.max_attempts,
                    type(exc).__name__,
                    getattr(exc, "diagnostic", exc),
                    delay,
                )
                sleep_func(delay)
    raise last_exc  # type: ignore[misc]
