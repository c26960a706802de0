"""
Reconnect Policy

Exponential backoff with jitter and bounded retries.
"""

import random
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Delays between reconnect attempts.

    The n-th consecutive failure waits
    ``min(max_delay, initial_delay * multiplier ** (n - 1))`` seconds plus
    up to ``jitter`` of that again.
    """
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1
    max_attempts: int = 5
    max_elapsed: Optional[float] = None

    def __post_init__(self):
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be at least 1.0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must not be shorter than initial_delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def base_delay(self, failure_number: int) -> float:
        if failure_number < 1:
            raise ValueError("failure_number starts at 1")
        # Cap the exponent so huge failure counts cannot overflow.
        exponent = min(failure_number - 1, 64)
        return min(self.max_delay, self.initial_delay * self.multiplier ** exponent)

    def delay(self, failure_number: int, rng: Optional[random.Random] = None) -> float:
        """
        Seconds to wait after the given consecutive failure.

        Args:
            failure_number: 1 for the first failure in a row
            rng: Random source for jitter (tests pass a seeded one)
        """
        base = self.base_delay(failure_number)
        if not self.jitter:
            return base
        rng = rng or random
        return base + rng.uniform(0.0, self.jitter * base)

    def should_retry(self, failures: int, elapsed: float = 0.0) -> bool:
        """False once the attempt or time budget is spent."""
        if failures >= self.max_attempts:
            return False
        if self.max_elapsed is not None and elapsed >= self.max_elapsed:
            return False
        return True
