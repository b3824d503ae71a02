"""
Bounded retry loop around a single logical request.

State machine per request:

    SENDING → DONE                                  (2xx/3xx)
    SENDING → CLASSIFYING → FAILED                  (not a rate limit)
    SENDING → CLASSIFYING → POLICY_INVOKED → FAILED (handler raised)
    SENDING → CLASSIFYING → POLICY_INVOKED → SENDING (handler returned)

Re-entering SENDING past ``max_attempts`` raises ``RetryExhaustedError``
chained to the last ``HttpException``. Transport failures propagate
from SENDING without classification.

All per-request state (attempt counter, current exchange) lives on the
stack of ``execute``; the executor itself can be shared across threads.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from secrets import token_hex
from urllib.parse import urlsplit

from limitguard.http.classifier import FailureClassifier, FailureKind
from limitguard.http.connection import FinalizedConnection, LiveConnection
from limitguard.http.errors import (
    ApiIOError,
    HandlerError,
    HttpException,
    RetryExhaustedError,
    TransportFailure,
)
from limitguard.http.handlers import AbuseLimitHandler, RateLimitHandler
from limitguard.http.pacing import TokenBucket
from limitguard.http.transport import Transport
from limitguard.obs.logging import log_event
from limitguard.obs.metrics import ClientMetrics

DEFAULT_MAX_ATTEMPTS = 3


class RequestState(str, Enum):
    SENDING = "sending"
    CLASSIFYING = "classifying"
    POLICY_INVOKED = "policy_invoked"
    DONE = "done"
    FAILED = "failed"


class RequestExecutor:
    def __init__(
        self,
        transport: Transport,
        *,
        rate_limit_handler: RateLimitHandler = RateLimitHandler.WAIT,
        abuse_limit_handler: AbuseLimitHandler = AbuseLimitHandler.WAIT,
        classifier: FailureClassifier | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        metrics: ClientMetrics | None = None,
        rate_limiter: TokenBucket | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._transport = transport
        self._rate_limit_handler = rate_limit_handler
        self._abuse_limit_handler = abuse_limit_handler
        self._classifier = classifier or FailureClassifier()
        self._max_attempts = max_attempts
        self._metrics = metrics or ClientMetrics()
        self._rate_limiter = rate_limiter
        self._logger = logger or logging.getLogger(__name__)

    @property
    def metrics(self) -> ClientMetrics:
        return self._metrics

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def execute(self, connection: LiveConnection, *, raise_on_error: bool = True) -> FinalizedConnection:
        """
        Send ``connection`` until it succeeds, fails permanently, or runs out of attempts.

        Args:
            connection: The request to send. It is re-sent unchanged on retry.
            raise_on_error: When False, a failure that is not a rate limit is
                returned as a ``FinalizedConnection`` instead of raised.

        Returns:
            The finalized connection of the last attempt.

        Raises:
            TransportFailure: The network call failed.
            HttpException: A non rate-limit failure (when raise_on_error).
            RateLimitExceededError: A FAIL handler gave up.
            RetryExhaustedError: ``max_attempts`` attempts were all rate limited.
            HandlerError: A custom handler raised a non-I/O exception.
        """
        request_id = token_hex(4)
        path = urlsplit(connection.url).path or "/"
        state = RequestState.SENDING
        last_failure: HttpException | None = None
        attempt = 0

        while attempt < self._max_attempts:
            attempt += 1
            state = self._transition(request_id, state, RequestState.SENDING, attempt)
            view = self._send(connection, path, attempt, request_id)

            if not view.failed:
                self._transition(request_id, state, RequestState.DONE, attempt)
                return view

            state = self._transition(request_id, state, RequestState.CLASSIFYING, attempt)
            failure = HttpException.from_view(view)
            kind = self._classifier.classify(view)

            if kind is None or not kind.retryable:
                self._transition(request_id, state, RequestState.FAILED, attempt)
                if not raise_on_error:
                    return view
                self._log_fail(view, request_id, kind.value if kind else "unknown")
                raise failure

            log_event(
                self._logger,
                logging.WARNING,
                "api_rate_limited" if kind is FailureKind.RATE_LIMIT else "api_secondary_rate_limited",
                "Rate limit hit; invoking handler",
                url=view.url,
                status=view.status_code,
                attempt=attempt,
                request_id=request_id,
                remaining=view.header("X-RateLimit-Remaining"),
                reset=view.header("X-RateLimit-Reset"),
                retry_after=view.header("Retry-After"),
            )
            state = self._transition(request_id, state, RequestState.POLICY_INVOKED, attempt)
            try:
                self._invoke_handler(kind, failure, view)
            except ApiIOError:
                self._transition(request_id, state, RequestState.FAILED, attempt)
                self._log_fail(view, request_id, kind.value)
                raise
            if attempt < self._max_attempts:
                self._metrics.record_retry(path, kind.value)
            last_failure = failure

        log_event(
            self._logger,
            logging.ERROR,
            "retry_exhausted",
            f"Ran out of retries for {connection.url}",
            url=connection.url,
            attempts=attempt,
            request_id=request_id,
            state=RequestState.FAILED.value,
        )
        raise RetryExhaustedError(
            f"Ran out of retries for URL: {connection.url}",
            attempts=attempt,
            url=connection.url,
        ) from last_failure

    def _send(self, connection: LiveConnection, path: str, attempt: int, request_id: str) -> FinalizedConnection:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire()
        start = time.monotonic()
        try:
            exchange = self._transport.send(connection)
        except TransportFailure:
            latency_ms = (time.monotonic() - start) * 1000
            self._metrics.record_request(path, "transport_error", latency_ms)
            log_event(
                self._logger,
                logging.WARNING,
                "http_request",
                f"{connection.method} {connection.url}",
                url=connection.url,
                status=None,
                attempt=attempt,
                latency_ms=round(latency_ms, 2),
                request_id=request_id,
            )
            raise
        latency_ms = (time.monotonic() - start) * 1000
        self._metrics.record_request(path, str(exchange.status_code), latency_ms)
        log_event(
            self._logger,
            logging.INFO,
            "http_request",
            f"{exchange.method} {exchange.url}",
            url=exchange.url,
            status=exchange.status_code,
            attempt=attempt,
            latency_ms=round(latency_ms, 2),
            request_id=request_id,
        )
        return FinalizedConnection(exchange)

    def _invoke_handler(self, kind: FailureKind, failure: HttpException, view: FinalizedConnection) -> None:
        handler = self._rate_limit_handler if kind is FailureKind.RATE_LIMIT else self._abuse_limit_handler
        try:
            handler.on_error(failure, view)
        except ApiIOError as exc:
            if exc is failure or exc.__cause__ is not None:
                raise
            raise exc from failure
        except Exception as exc:
            # cause is the HTTP failure; the handler's exception stays on __context__
            raise HandlerError(
                f"{type(handler).__name__} raised {type(exc).__name__}: {exc}",
                status_code=view.status_code,
                url=view.url,
                handler_exception=exc,
            ) from failure

    def _transition(
        self, request_id: str, current: RequestState, target: RequestState, attempt: int
    ) -> RequestState:
        if self._logger.isEnabledFor(logging.DEBUG):
            log_event(
                self._logger,
                logging.DEBUG,
                "state_transition",
                f"{current.value} -> {target.value}",
                request_id=request_id,
                attempt=attempt,
                state=target.value,
            )
        return target

    def _log_fail(self, view: FinalizedConnection, request_id: str, error_type: str) -> None:
        log_event(
            self._logger,
            logging.ERROR,
            "http_fail",
            f"Request failed for {view.url}",
            url=view.url,
            status=view.status_code,
            error_type=error_type,
            request_id=request_id,
        )
