"""
Token bucket rate limiter for Tradier API requests.

Permits accumulate at a steady rate up to a fixed capacity and every request
debits its declared cost. Refill is computed lazily from elapsed time at
acquisition, so no background timer is needed.

Waiters are served strictly in arrival order: callers queue on an asyncio.Lock
(FIFO, no barging) and the head of the queue sleeps while holding it, so a
burst of new callers can never overtake an earlier, larger request. The head
waiter is woken early when penalize() or reset() changes the budget.
"""

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Async token bucket shared by all outbound requests.

    Example:
        bucket = TokenBucket(capacity=60, refill_per_sec=1.0)
        await bucket.acquire()        # cost 1
        await bucket.acquire(cost=2)  # heavier endpoint
    """

    def __init__(
        self,
        capacity: int,
        refill_per_sec: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the bucket full.

        Args:
            capacity: Maximum tokens the bucket can hold (burst size)
            refill_per_sec: Tokens added per second
            clock: Monotonic time source
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_per_sec <= 0:
            raise ValueError("refill_per_sec must be positive")

        self.capacity = capacity
        self.refill_per_sec = refill_per_sec
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self._budget_changed = asyncio.Event()

        self.granted = 0
        self.total_wait = 0.0

    @property
    def tokens(self) -> float:
        """Tokens available right now (after lazy refill)."""
        self._refill(self._clock())
        return self._tokens

    def _refill(self, now: float) -> None:
        # A penalty may have moved the baseline into the future
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_sec)
        self._last_refill = now

    def _wait_time(self, cost: int, now: float) -> float:
        pending = max(0.0, self._last_refill - now)
        deficit = max(0.0, cost - self._tokens)
        return pending + deficit / self.refill_per_sec

    def _check_cost(self, cost: int) -> None:
        if cost <= 0:
            raise ValueError("cost must be positive")
        if cost > self.capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self.capacity}")

    async def acquire(self, cost: int = 1) -> float:
        """Wait until `cost` tokens are available, then debit them.

        Args:
            cost: Number of tokens this request consumes

        Returns:
            Seconds spent waiting (0 if granted immediately)
        """
        self._check_cost(cost)
        started = self._clock()

        async with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                if now >= self._last_refill and self._tokens >= cost:
                    self._tokens -= cost
                    self.granted += cost
                    waited = now - started
                    self.total_wait += waited
                    return waited

                wait = self._wait_time(cost, now)
                logger.debug(f"Rate limit: waiting {wait:.3f}s for {cost} token(s)")
                self._budget_changed.clear()
                try:
                    async with asyncio.timeout(wait):
                        await self._budget_changed.wait()
                except TimeoutError:
                    pass

    def try_acquire(self, cost: int = 1) -> bool:
        """Debit `cost` tokens only if available right now and nobody is queued."""
        self._check_cost(cost)
        if self._lock.locked():
            return False
        now = self._clock()
        self._refill(now)
        if now >= self._last_refill and self._tokens >= cost:
            self._tokens -= cost
            self.granted += cost
            return True
        return False

    def penalize(self, retry_after: float) -> None:
        """Honor a server-side "retry after" signal.

        Empties the bucket and moves the refill baseline `retry_after` seconds
        into the future, overriding the local estimate.
        """
        if retry_after <= 0:
            return
        now = self._clock()
        self._refill(now)
        self._tokens = 0.0
        self._last_refill = max(self._last_refill, now + retry_after)
        self._budget_changed.set()
        logger.warning(f"Rate limiter penalized: no permits for {retry_after:.2f}s")

    def reset(self) -> None:
        """Refill the bucket to capacity."""
        self._tokens = float(self.capacity)
        self._last_refill = self._clock()
        self._budget_changed.set()
