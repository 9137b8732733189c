"""
Exponential backoff policy shared by request retries and stream reconnects.

The policy is plain data so that retry behaviour can be configured and tested
directly instead of living inside retry loops.
"""

import random
from dataclasses import dataclass
from typing import Optional

from tradier_gateway.lib.constants import (
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF_SECONDS,
    DEFAULT_MAX_BACKOFF_SECONDS,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Configuration for exponential backoff with jitter.

    Attributes:
        initial: Delay before the first retry in seconds
        maximum: Ceiling for any single delay in seconds
        multiplier: Growth factor between consecutive attempts
        jitter: Fractional jitter applied to each delay (0.1 = +/-10%)
        max_attempts: Retry cap (None = unbounded)
    """
    initial: float = DEFAULT_INITIAL_BACKOFF_SECONDS
    maximum: float = DEFAULT_MAX_BACKOFF_SECONDS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_BACKOFF_JITTER
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.initial < 0 or self.maximum < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1.0:
            raise ValueError("Backoff multiplier must be >= 1.0")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("Backoff jitter must be in [0, 1)")

    def base_delay(self, attempt: int) -> float:
        """Delay for a 1-based attempt number, before jitter."""
        if attempt < 1:
            return 0.0
        delay = self.initial * (self.multiplier ** (attempt - 1))
        return min(delay, self.maximum)

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay for a 1-based attempt number with jitter applied.

        The result never exceeds `maximum`.
        """
        base = self.base_delay(attempt)
        if self.jitter == 0 or base == 0:
            return base
        rand = rng.random() if rng else random.random()
        spread = base * self.jitter
        return min(max(0.0, base - spread + 2 * spread * rand), self.maximum)

    def exhausted(self, attempt: int) -> bool:
        """Check whether `attempt` retries exceed the cap."""
        return self.max_attempts is not None and attempt > self.max_attempts
