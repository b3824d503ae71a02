from __future__ import annotations

import threading
import time
from typing import Protocol

from limitguard.http.errors import WaitInterruptedError


class Clock(Protocol):
    def now(self) -> float:
        """Current wall-clock time in epoch seconds."""

    def sleep_until(self, timestamp: float) -> None:
        """Block the calling thread until ``timestamp`` (epoch seconds)."""


class SystemClock:
    """
    Wall clock backed by ``time.time``.

    When a ``cancel_event`` is given, sleeping waits on it instead of
    ``time.sleep``; setting the event aborts the sleep with
    ``WaitInterruptedError``. Only the calling thread blocks.
    """

    def __init__(self, cancel_event: threading.Event | None = None) -> None:
        self._cancel_event = cancel_event

    def now(self) -> float:
        return time.time()

    def sleep_until(self, timestamp: float) -> None:
        remaining = timestamp - self.now()
        if self._cancel_event is None:
            if remaining > 0:
                time.sleep(remaining)
            return
        if self._cancel_event.is_set():
            raise WaitInterruptedError("Rate limit wait cancelled")
        if remaining > 0 and self._cancel_event.wait(remaining):
            raise WaitInterruptedError("Rate limit wait cancelled")


DEFAULT_CLOCK = SystemClock()
