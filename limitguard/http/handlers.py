"""
Pluggable rate limit policies.

A handler is invoked with the classified ``HttpException`` and the
``FinalizedConnection`` of the failed attempt. Raising ends the request
with that error; returning normally asks the executor to try again.

Two handler families exist, one per limit kind:

- ``RateLimitHandler`` for primary quota exhaustion
  (``X-RateLimit-Remaining: 0``).
- ``AbuseLimitHandler`` for secondary limits (``Retry-After``).

``FAIL`` and ``WAIT`` on each family are shared, stateless instances.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, ClassVar, Union

from limitguard.http.clock import DEFAULT_CLOCK, Clock
from limitguard.http.connection import FinalizedConnection
from limitguard.http.errors import HttpException, RateLimitExceededError
from limitguard.http.exchange import parse_http_date
from limitguard.obs.logging import log_event

DEFAULT_WAIT_S = 60.0
MAX_WAIT_S = 3600.0

HandlerCallback = Callable[[HttpException, FinalizedConnection], None]

_logger = logging.getLogger(__name__)


class RateLimitHandler(ABC):
    FAIL: ClassVar[RateLimitHandler]
    WAIT: ClassVar[RateLimitHandler]

    @abstractmethod
    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        """Raise to fail the request, return to retry it."""


class AbuseLimitHandler(ABC):
    FAIL: ClassVar[AbuseLimitHandler]
    WAIT: ClassVar[AbuseLimitHandler]

    @abstractmethod
    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        """Raise to fail the request, return to retry it."""


def _sleep_for(clock: Clock, seconds: float, connection: FinalizedConnection, reason: str) -> None:
    if seconds <= 0:
        return
    log_event(
        _logger,
        logging.INFO,
        "rate_limit_wait",
        f"Waiting {seconds:.1f}s before retrying",
        url=connection.url,
        wait_s=round(seconds, 3),
        reason=reason,
    )
    clock.sleep_until(clock.now() + seconds)


class FailRateLimitHandler(RateLimitHandler):
    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        raise RateLimitExceededError(
            "API rate limit reached",
            status_code=connection.status_code,
            response_message=connection.response_message,
            url=connection.url,
        ) from error


class WaitRateLimitHandler(RateLimitHandler):
    """
    Sleep until the quota window resets, then retry.

    The wait is measured against the server's ``Date`` header when
    present, so a skewed local clock does not stretch or cut it. A reset
    time already in the past means retry immediately; a missing reset
    header means waiting ``default_wait_s``. Waits never exceed
    ``max_wait_s``.
    """

    def __init__(
        self,
        *,
        clock: Clock = DEFAULT_CLOCK,
        default_wait_s: float = DEFAULT_WAIT_S,
        max_wait_s: float = MAX_WAIT_S,
    ) -> None:
        self._clock = clock
        self._default_wait_s = default_wait_s
        self._max_wait_s = max_wait_s

    def wait_seconds(self, connection: FinalizedConnection) -> float:
        record = connection.rate_limit()
        if record is None or record.reset is None:
            return min(self._default_wait_s, self._max_wait_s)
        server_date_ms = connection.date()
        now = server_date_ms / 1000 if server_date_ms > 0 else self._clock.now()
        remaining = record.seconds_until_reset(now) or 0.0
        if remaining <= 0:
            return 0.0
        return min(remaining, self._max_wait_s)

    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        _sleep_for(self._clock, self.wait_seconds(connection), connection, "rate_limit_reset")


class CallbackRateLimitHandler(RateLimitHandler):
    def __init__(self, callback: HandlerCallback) -> None:
        self._callback = callback

    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        self._callback(error, connection)


class FailAbuseLimitHandler(AbuseLimitHandler):
    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        raise RateLimitExceededError(
            "Secondary rate limit reached",
            status_code=connection.status_code,
            response_message=connection.response_message,
            url=connection.url,
        ) from error


class WaitAbuseLimitHandler(AbuseLimitHandler):
    """Sleep for ``Retry-After`` (delta seconds or HTTP-date), then retry."""

    def __init__(
        self,
        *,
        clock: Clock = DEFAULT_CLOCK,
        default_wait_s: float = DEFAULT_WAIT_S,
        max_wait_s: float = MAX_WAIT_S,
    ) -> None:
        self._clock = clock
        self._default_wait_s = default_wait_s
        self._max_wait_s = max_wait_s

    def wait_seconds(self, connection: FinalizedConnection) -> float:
        raw = connection.header("Retry-After")
        if raw is None:
            return min(self._default_wait_s, self._max_wait_s)
        try:
            seconds = float(raw)
        except ValueError:
            retry_at_ms = parse_http_date(raw)
            if retry_at_ms == 0:
                return min(self._default_wait_s, self._max_wait_s)
            server_date_ms = connection.date()
            now = server_date_ms / 1000 if server_date_ms > 0 else self._clock.now()
            seconds = retry_at_ms / 1000 - now
        return min(max(0.0, seconds), self._max_wait_s)

    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        _sleep_for(self._clock, self.wait_seconds(connection), connection, "retry_after")


class CallbackAbuseLimitHandler(AbuseLimitHandler):
    def __init__(self, callback: HandlerCallback) -> None:
        self._callback = callback

    def on_error(self, error: HttpException, connection: FinalizedConnection) -> None:
        self._callback(error, connection)


RateLimitHandler.FAIL = FailRateLimitHandler()
RateLimitHandler.WAIT = WaitRateLimitHandler()
AbuseLimitHandler.FAIL = FailAbuseLimitHandler()
AbuseLimitHandler.WAIT = WaitAbuseLimitHandler()

RateLimitHandlerSpec = Union[RateLimitHandler, HandlerCallback, str]
AbuseLimitHandlerSpec = Union[AbuseLimitHandler, HandlerCallback, str]


def resolve_rate_limit_handler(spec: RateLimitHandlerSpec) -> RateLimitHandler:
    if isinstance(spec, RateLimitHandler):
        return spec
    if isinstance(spec, str):
        named = {"fail": RateLimitHandler.FAIL, "wait": RateLimitHandler.WAIT}
        try:
            return named[spec.lower()]
        except KeyError:
            raise ValueError(f"Unknown rate limit handler: {spec}") from None
    if callable(spec):
        return CallbackRateLimitHandler(spec)
    raise TypeError(f"Unsupported rate limit handler: {spec!r}")


def resolve_abuse_limit_handler(spec: AbuseLimitHandlerSpec) -> AbuseLimitHandler:
    if isinstance(spec, AbuseLimitHandler):
        return spec
    if isinstance(spec, str):
        named = {"fail": AbuseLimitHandler.FAIL, "wait": AbuseLimitHandler.WAIT}
        try:
            return named[spec.lower()]
        except KeyError:
            raise ValueError(f"Unknown abuse limit handler: {spec}") from None
    if callable(spec):
        return CallbackAbuseLimitHandler(spec)
    raise TypeError(f"Unsupported abuse limit handler: {spec!r}")
