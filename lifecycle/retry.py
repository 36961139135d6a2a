"""Bounded fixed-delay retry policy for broker calls."""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional


@dataclass
class RetryPolicy:
    """
    How many times to try a remote call and how long to wait between tries.

    backoff maps the 1-based attempt number that just failed to a delay in
    seconds. sleep is injectable so tests can run without waiting.
    """
    max_attempts: int = 3
    delay_seconds: float = 0.5
    backoff: Optional[Callable[[int], float]] = None
    sleep: Callable[[float], None] = field(default=time.sleep)

    def __post_init__(self):
        if self.max_attempts < 1:
            self.max_attempts = 1
        if self.backoff is None:
            self.backoff = lambda attempt: self.delay_seconds

    def attempts(self):
        """Yield attempt numbers 1..max_attempts."""
        return range(1, self.max_attempts + 1)

    def wait(self, attempt: int):
        """Sleep after a failed attempt, unless it was the last one."""
        if attempt < self.max_attempts:
            self.sleep(self.backoff(attempt))
