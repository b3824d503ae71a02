"""
Client facade and its builder.

Example:
    >>> client = (
    ...     ClientBuilder()
    ...     .with_endpoint("https://api.github.com")
    ...     .with_rate_limit_handler(RateLimitHandler.FAIL)
    ...     .build()
    ... )
    >>> with client:
    ...     user = client.get("/user")
"""

from __future__ import annotations

import logging
from typing import Mapping

import httpx

from limitguard.config import ClientConfig
from limitguard.http.clock import DEFAULT_CLOCK, Clock
from limitguard.http.connection import FinalizedConnection, LiveConnection
from limitguard.http.executor import DEFAULT_MAX_ATTEMPTS, RequestExecutor
from limitguard.http.handlers import (
    DEFAULT_WAIT_S,
    MAX_WAIT_S,
    AbuseLimitHandler,
    AbuseLimitHandlerSpec,
    RateLimitHandler,
    RateLimitHandlerSpec,
    WaitAbuseLimitHandler,
    WaitRateLimitHandler,
    resolve_abuse_limit_handler,
    resolve_rate_limit_handler,
)
from limitguard.http.pacing import TokenBucket
from limitguard.http.transport import HttpxTransport, Transport
from limitguard.obs.metrics import ClientMetrics

DEFAULT_HEADERS = {"Accept": "application/json"}


class ApiClient:
    def __init__(self, executor: RequestExecutor, transport: Transport) -> None:
        self._executor = executor
        self._transport = transport

    @property
    def metrics(self) -> ClientMetrics:
        return self._executor.metrics

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    def create_connection(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> LiveConnection:
        return LiveConnection(path, method=method, headers=headers, body=body)

    def execute(self, connection: LiveConnection) -> FinalizedConnection:
        return self._executor.execute(connection)

    def get(self, path: str, *, headers: Mapping[str, str] | None = None) -> FinalizedConnection:
        return self.execute(self.create_connection(path, headers=headers))

    def fetch_status_code(self, path: str, *, method: str = "GET") -> int:
        """
        Status code of the request; only rate limit failures raise.

        Rate limit failures still go through the configured handlers, so
        a FAIL handler makes this raise just like ``execute``.
        """
        connection = self.create_connection(path, method=method)
        return self._executor.execute(connection, raise_on_error=False).status_code

    def close(self) -> None:
        self._transport.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ClientBuilder:
    def __init__(self) -> None:
        self._base_url = ""
        self._timeout_s = 10.0
        self._headers: dict[str, str] = dict(DEFAULT_HEADERS)
        self._rate_limit_handler: RateLimitHandlerSpec = RateLimitHandler.WAIT
        self._abuse_limit_handler: AbuseLimitHandlerSpec = AbuseLimitHandler.WAIT
        self._max_attempts = DEFAULT_MAX_ATTEMPTS
        self._max_rps: float | None = None
        self._default_wait_s = DEFAULT_WAIT_S
        self._max_wait_s = MAX_WAIT_S
        self._clock: Clock = DEFAULT_CLOCK
        self._http_transport: httpx.BaseTransport | None = None
        self._connector: Transport | None = None
        self._metrics: ClientMetrics | None = None
        self._logger: logging.Logger | None = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> ClientBuilder:
        builder = (
            cls()
            .with_endpoint(config.base_url)
            .with_timeout(config.timeout_s)
            .with_headers(config.headers)
            .with_max_attempts(config.max_attempts)
            .with_wait_bounds(config.default_wait_s, config.max_wait_s)
            .with_rate_limit_handler(config.rate_limit_handler)
            .with_abuse_limit_handler(config.abuse_limit_handler)
        )
        if config.max_rps is not None:
            builder.with_max_rps(config.max_rps)
        return builder

    def with_endpoint(self, base_url: str) -> ClientBuilder:
        self._base_url = base_url
        return self

    def with_timeout(self, timeout_s: float) -> ClientBuilder:
        self._timeout_s = timeout_s
        return self

    def with_headers(self, headers: Mapping[str, str]) -> ClientBuilder:
        self._headers.update(headers)
        return self

    def with_rate_limit_handler(self, handler: RateLimitHandlerSpec) -> ClientBuilder:
        """Accepts a handler, a ``(error, connection)`` callable, or "fail"/"wait"."""
        resolve_rate_limit_handler(handler)
        self._rate_limit_handler = handler
        return self

    def with_abuse_limit_handler(self, handler: AbuseLimitHandlerSpec) -> ClientBuilder:
        resolve_abuse_limit_handler(handler)
        self._abuse_limit_handler = handler
        return self

    def with_max_attempts(self, max_attempts: int) -> ClientBuilder:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        return self

    def with_max_rps(self, max_rps: float) -> ClientBuilder:
        self._max_rps = max_rps
        return self

    def with_wait_bounds(self, default_wait_s: float, max_wait_s: float) -> ClientBuilder:
        self._default_wait_s = default_wait_s
        self._max_wait_s = max_wait_s
        return self

    def with_clock(self, clock: Clock) -> ClientBuilder:
        """Clock used by the built-in WAIT handlers; custom handlers keep their own."""
        self._clock = clock
        return self

    def with_transport(self, transport: httpx.BaseTransport) -> ClientBuilder:
        """Use a custom httpx transport (e.g. ``httpx.MockTransport``)."""
        self._http_transport = transport
        return self

    def with_connector(self, connector: Transport) -> ClientBuilder:
        """Replace the httpx-backed transport entirely."""
        self._connector = connector
        return self

    def with_metrics(self, metrics: ClientMetrics) -> ClientBuilder:
        self._metrics = metrics
        return self

    def with_logger(self, logger: logging.Logger) -> ClientBuilder:
        self._logger = logger
        return self

    def _custom_wait(self) -> bool:
        return (
            self._clock is not DEFAULT_CLOCK
            or self._default_wait_s != DEFAULT_WAIT_S
            or self._max_wait_s != MAX_WAIT_S
        )

    @staticmethod
    def _is_wait(spec: object, shared: object) -> bool:
        return spec is shared or (isinstance(spec, str) and spec.lower() == "wait")

    def _build_rate_limit_handler(self) -> RateLimitHandler:
        spec = self._rate_limit_handler
        if self._is_wait(spec, RateLimitHandler.WAIT) and self._custom_wait():
            return WaitRateLimitHandler(
                clock=self._clock, default_wait_s=self._default_wait_s, max_wait_s=self._max_wait_s
            )
        return resolve_rate_limit_handler(spec)

    def _build_abuse_limit_handler(self) -> AbuseLimitHandler:
        spec = self._abuse_limit_handler
        if self._is_wait(spec, AbuseLimitHandler.WAIT) and self._custom_wait():
            return WaitAbuseLimitHandler(
                clock=self._clock, default_wait_s=self._default_wait_s, max_wait_s=self._max_wait_s
            )
        return resolve_abuse_limit_handler(spec)

    def build(self) -> ApiClient:
        transport = self._connector or HttpxTransport(
            base_url=self._base_url,
            timeout_s=self._timeout_s,
            headers=self._headers,
            transport=self._http_transport,
        )
        executor = RequestExecutor(
            transport,
            rate_limit_handler=self._build_rate_limit_handler(),
            abuse_limit_handler=self._build_abuse_limit_handler(),
            max_attempts=self._max_attempts,
            metrics=self._metrics,
            rate_limiter=TokenBucket(rate_per_sec=self._max_rps) if self._max_rps else None,
            logger=self._logger,
        )
        return ApiClient(executor, transport)
