"""
Bounded retry with exponential backoff and jitter.

Used for the calls that may fail transiently and are safe to repeat:
telemetry session initialisation from the capture side and the advisory
analysis request.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always_retry(error: Exception) -> bool:
    return True


@dataclass
class RetryPolicy:
    """
    Retry a callable up to max_attempts times.

    The delay before attempt n+1 is base_delay * 2 ** (n - 1) plus a random
    jitter in [0, jitter). Delays are in seconds. Only errors accepted by
    is_retryable are retried; anything else propagates immediately, as does
    the error from the final attempt.
    """
    max_attempts: int = 3
    base_delay: float = 0.6
    jitter: float = 0.25
    is_retryable: Callable[[Exception], bool] = _always_retry
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.jitter < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        jitter = self.rng.uniform(0, self.jitter) if self.jitter else 0.0
        return self.base_delay * (2 ** (attempt - 1)) + jitter

    def call(self, func: Callable[[], T], description: Optional[str] = None) -> T:
        label = description or getattr(func, "__name__", "operation")
        attempt = 1
        while True:
            try:
                return func()
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transient failure in %s on attempt %d/%d (%s); retrying in %.0fms",
                    label, attempt, self.max_attempts, e, delay * 1000,
                )
                self.sleep(delay)
                attempt += 1
