import logging

import pytest


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self._now = now
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def sleep_until(self, timestamp: float) -> None:
        self.sleeps.append(timestamp - self._now)
        self._now = max(self._now, timestamp)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger("limitguard")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
