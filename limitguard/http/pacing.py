from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucket:
    """
    Client-side request pacing.

    ``acquire`` blocks until a token is available. The lock is released
    before sleeping, so one paced caller never stalls the others.
    """

    def __init__(
        self,
        rate_per_sec: float,
        capacity: float | None = None,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be positive")
        self._rate = rate_per_sec
        self._capacity = capacity if capacity is not None else max(1.0, rate_per_sec)
        self._tokens = self._capacity
        self._monotonic = monotonic
        self._sleep = sleep
        self._updated_at = monotonic()
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Take one token; return the total seconds spent waiting."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._monotonic()
                elapsed = now - self._updated_at
                if elapsed > 0:
                    self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
                    self._updated_at = now

                if self._tokens >= 1:
                    self._tokens -= 1
                    return waited

                wait_time = (1 - self._tokens) / self._rate

            self._sleep(wait_time)
            waited += wait_time
