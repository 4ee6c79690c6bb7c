"""Retry schedule used by BrokerConnectionManager.reconnect()."""

from __future__ import annotations

import random
from dataclasses import dataclass

BACKOFF_CONSTANT = "constant"
BACKOFF_EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry schedule.

    delay_for() is a pure function of the attempt number and this
    configuration (apart from optional jitter), so schedules can be tested
    without any I/O.

    Attributes:
        max_retries: Maximum number of connection attempts per reconnect() call.
        retry_delay: Delay in seconds after a failed attempt. With constant
            backoff every wait has this length.
        backoff: 'constant' or 'exponential'. Exponential waits
            retry_delay * multiplier ** attempt, capped at max_delay.
        multiplier: Growth factor for exponential backoff.
        max_delay: Upper bound for an exponential wait.
        jitter: Fraction (0.0 to 1.0) of the delay to randomize.

    Example:
        >>> policy = RetryPolicy(max_retries=3, retry_delay=0.1)
        >>> [policy.delay_for(n) for n in range(3)]
        [0.1, 0.1, 0.1]
    """

    max_retries: int = 5
    retry_delay: float = 5.0
    backoff: str = BACKOFF_CONSTANT
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must not be negative, got {self.retry_delay}")
        if self.backoff not in (BACKOFF_CONSTANT, BACKOFF_EXPONENTIAL):
            raise ValueError(f"Unknown backoff strategy: {self.backoff!r}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}")

    def delay_for(self, attempt: int) -> float:
        """
        Delay in seconds to wait after failed attempt number ``attempt`` (0-indexed).

        Example:
            With retry_delay=1.0, backoff='exponential', max_delay=60.0:
            - attempt=0: 1.0s
            - attempt=1: 2.0s
            - attempt=2: 4.0s
            - attempt=6: 60.0s (capped)
        """
        if self.backoff == BACKOFF_EXPONENTIAL:
            delay = min(self.retry_delay * (self.multiplier**attempt), self.max_delay)
        else:
            delay = self.retry_delay

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))  # nosec B311

        return delay

    def schedule(self) -> list[float]:
        """Waits between consecutive attempts (one fewer than max_retries)."""
        return [self.delay_for(attempt) for attempt in range(self.max_retries - 1)]


__all__ = [
    "BACKOFF_CONSTANT",
    "BACKOFF_EXPONENTIAL",
    "RetryPolicy",
]
