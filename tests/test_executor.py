import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from email.utils import formatdate

import httpx
import pytest

from limitguard.client import ApiClient, ClientBuilder
from limitguard.http.clock import SystemClock
from limitguard.http.connection import FinalizedConnection
from limitguard.http.errors import (
    ApiIOError,
    HandlerError,
    HttpException,
    RateLimitExceededError,
    RetryExhaustedError,
    TransportFailure,
    UnsupportedOperationError,
    WaitInterruptedError,
)
from limitguard.http.executor import RequestExecutor
from limitguard.http.handlers import AbuseLimitHandler, RateLimitHandler

BASE_URL = "https://api.example.test"
REPO_PATH = "/repos/org/temp-testHandler"
GITHUB_ACCEPT = "application/vnd.github.v3+json"


class CountingHandler:
    """MockTransport handler: /user always succeeds, REPO_PATH replays ``responses``."""

    def __init__(self, responses: list[httpx.Response] | None = None, *, repeat_last: bool = False) -> None:
        self.responses = list(responses or [])
        self.repeat_last = repeat_last
        self.request_count = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.request_count += 1
        if request.url.path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        if self.repeat_last and len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)


def rate_limited(reset_offset_s: int = -5, status_code: int = 403) -> httpx.Response:
    return _rate_limited_at(int(time.time()), reset_offset_s, status_code)


def _rate_limited_at(now: int, reset_offset_s: int, status_code: int) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers=[
            ("Access-Control-Allow-Origin", "*"),
            ("Content-Type", "application/json; charset=utf-8"),
            ("Date", formatdate(now, usegmt=True)),
            ("Last-Modified", "Thu, 06 Feb 2020 18:33:37 GMT"),
            ("Status", f"{status_code} Forbidden"),
            ("X-RateLimit-Limit", "5000"),
            ("X-RateLimit-Remaining", "0"),
            ("X-RateLimit-Reset", str(now + reset_offset_s)),
        ],
        content=b'{"message":"Must have push access to repository"}',
    )


def build_client(handler: CountingHandler, rate_limit_handler, *, max_attempts: int = 3, **kwargs) -> ApiClient:
    builder = (
        ClientBuilder()
        .with_endpoint(BASE_URL)
        .with_transport(httpx.MockTransport(handler))
        .with_headers({"Accept": GITHUB_ACCEPT})
        .with_rate_limit_handler(rate_limit_handler)
        .with_max_attempts(max_attempts)
    )
    for name, value in kwargs.items():
        getattr(builder, f"with_{name}")(value)
    return builder.build()


def test_handler_fail_with_inspection() -> None:
    handler = CountingHandler([_rate_limited_at(1700000000, 60, 403)])
    inspected: list[FinalizedConnection] = []

    def inspect(error: HttpException, connection: FinalizedConnection) -> None:
        inspected.append(connection)
        assert connection.date() == 1700000000000
        assert connection.expiration() == 0
        assert connection.if_modified_since() == 0
        assert connection.last_modified() == 1581014017000
        assert connection.request_method == "GET"
        assert connection.status_code == 403
        assert connection.response_message == "Forbidden"
        assert connection.url.endswith(REPO_PATH)
        assert connection.header_as_int("X-RateLimit-Limit", 10) == 5000
        assert connection.header_as_int("X-RateLimit-Remaining", 10) == 0
        assert connection.header_as_int("X-Foo", 20) == 20
        assert connection.header_as_long("X-RateLimit-Limit", 15) == 5000
        assert connection.header_as_long("X-Foo", 20) == 20
        assert connection.content_encoding() is None
        assert connection.content_type() == "application/json; charset=utf-8"

        with pytest.raises(ApiIOError):
            connection.body_stream()
        error_stream = connection.error_stream()
        assert error_stream is not None
        assert "Must have push access to repository" in error_stream.read().decode("utf-8")
        with pytest.raises(ApiIOError):
            connection.body_stream()

        assert connection.header("Status") == "403 Forbidden"
        assert connection.header_value_at(0) == "HTTP/1.1 403 Forbidden"
        assert connection.header_key_at(0) is None
        assert connection.header_key_at(1) == "Access-Control-Allow-Origin"
        assert connection.request_property("Accept") == GITHUB_ACCEPT

        connection.disconnect()
        connection.disconnect()
        with pytest.raises(UnsupportedOperationError):
            connection.connect()
        with pytest.raises(UnsupportedOperationError):
            connection.set_request_property("bogus", "thing")

        RateLimitHandler.FAIL.on_error(error, connection)

    client = build_client(handler, inspect)

    client.get("/user")
    assert handler.request_count == 1

    with pytest.raises(IOError) as excinfo:
        client.get(REPO_PATH)

    assert isinstance(excinfo.value, RateLimitExceededError)
    assert isinstance(excinfo.value.__cause__, HttpException)
    assert excinfo.value.__cause__.status_code == 403
    assert handler.request_count == 2
    assert len(inspected) == 1


def test_handler_http_status_fail() -> None:
    handler = CountingHandler([rate_limited()])
    client = build_client(handler, RateLimitHandler.FAIL)

    client.get("/user")
    assert handler.request_count == 1

    with pytest.raises(OSError) as excinfo:
        client.fetch_status_code(REPO_PATH)

    assert isinstance(excinfo.value.__cause__, HttpException)
    assert handler.request_count == 2


def test_fetch_status_code_returns_non_rate_limit_failures() -> None:
    handler = CountingHandler([httpx.Response(404, json={"message": "Not Found"})])
    client = build_client(handler, RateLimitHandler.FAIL)

    assert client.fetch_status_code(REPO_PATH) == 404
    assert handler.request_count == 1


def test_handler_wait() -> None:
    handler = CountingHandler([rate_limited(reset_offset_s=-5), httpx.Response(200, content=b'{"name":"temp"}')])
    client = build_client(handler, RateLimitHandler.WAIT)

    client.get("/user")
    assert handler.request_count == 1

    connection = client.get(REPO_PATH)

    assert connection.status_code == 200
    assert connection.body_stream().read() == b'{"name":"temp"}'
    assert handler.request_count == 3
    assert client.metrics.requests_for(REPO_PATH) == 2
    assert client.metrics.http_retries_total[(REPO_PATH, "rate_limit")] == 1


def test_handler_wait_sleeps_until_reset(fake_clock) -> None:
    now = int(fake_clock.now())
    handler = CountingHandler(
        [
            _rate_limited_at(now, 30, 403),
            _rate_limited_at(now + 30, 15, 403),
            httpx.Response(200, json={}),
        ]
    )
    client = build_client(handler, "wait", clock=fake_clock)

    client.get(REPO_PATH)

    assert fake_clock.sleeps == [pytest.approx(30.0), pytest.approx(15.0)]
    assert handler.request_count == 3


def test_handler_wait_stuck() -> None:
    handler = CountingHandler([rate_limited()], repeat_last=True)
    calls: list[int] = []
    client = build_client(handler, lambda error, connection: calls.append(connection.status_code))

    client.get("/user")
    assert handler.request_count == 1

    with pytest.raises(RetryExhaustedError) as excinfo:
        client.get(REPO_PATH)

    assert isinstance(excinfo.value, OSError)
    assert isinstance(excinfo.value.__cause__, HttpException)
    assert excinfo.value.attempts == 3
    assert handler.request_count == 4
    assert calls == [403, 403, 403]


@pytest.mark.parametrize("max_attempts", [1, 2, 5])
def test_retry_ceiling_is_configurable(max_attempts: int) -> None:
    handler = CountingHandler([rate_limited()], repeat_last=True)
    client = build_client(handler, lambda error, connection: None, max_attempts=max_attempts)

    with pytest.raises(RetryExhaustedError):
        client.get(REPO_PATH)

    assert handler.request_count == max_attempts


def test_fail_with_single_attempt_still_raises_rate_limit_error() -> None:
    handler = CountingHandler([rate_limited()])
    client = build_client(handler, RateLimitHandler.FAIL, max_attempts=1)

    with pytest.raises(RateLimitExceededError):
        client.get(REPO_PATH)


def test_non_rate_limit_failure_bypasses_handler() -> None:
    calls: list[int] = []
    handler = CountingHandler([httpx.Response(403, json={"message": "Bad credentials"})])
    client = build_client(handler, lambda error, connection: calls.append(1))

    with pytest.raises(HttpException) as excinfo:
        client.get(REPO_PATH)

    assert excinfo.value.status_code == 403
    assert "Bad credentials" in (excinfo.value.response_text or "")
    assert calls == []
    assert handler.request_count == 1


def test_transport_failure_propagates_without_handler() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = (
        ClientBuilder()
        .with_endpoint(BASE_URL)
        .with_transport(httpx.MockTransport(handler))
        .with_rate_limit_handler(lambda error, connection: calls.append(1))
        .build()
    )

    with pytest.raises(TransportFailure) as excinfo:
        client.get(REPO_PATH)

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
    assert calls == []
    assert client.metrics.http_requests_total[(REPO_PATH, "transport_error")] == 1


def test_custom_handler_exception_is_wrapped() -> None:
    handler = CountingHandler([rate_limited()])

    def explode(error: HttpException, connection: FinalizedConnection) -> None:
        raise ValueError("policy bug")

    client = build_client(handler, explode)

    with pytest.raises(HandlerError) as excinfo:
        client.get(REPO_PATH)

    assert isinstance(excinfo.value.__cause__, HttpException)
    assert isinstance(excinfo.value.handler_exception, ValueError)
    assert excinfo.value.__context__ is excinfo.value.handler_exception
    assert handler.request_count == 1


def test_custom_handler_io_error_gets_http_cause() -> None:
    handler = CountingHandler([rate_limited()])

    def give_up(error: HttpException, connection: FinalizedConnection) -> None:
        raise ApiIOError("giving up")

    client = build_client(handler, give_up)

    with pytest.raises(ApiIOError) as excinfo:
        client.get(REPO_PATH)

    assert excinfo.value.message == "giving up"
    assert isinstance(excinfo.value.__cause__, HttpException)


def test_custom_handler_reraising_original_failure() -> None:
    handler = CountingHandler([rate_limited()])

    def reraise(error: HttpException, connection: FinalizedConnection) -> None:
        raise error

    client = build_client(handler, reraise)

    with pytest.raises(HttpException) as excinfo:
        client.get(REPO_PATH)

    assert excinfo.value.status_code == 403


def test_secondary_rate_limit_uses_abuse_handler() -> None:
    rate_calls: list[int] = []
    handler = CountingHandler(
        [
            httpx.Response(429, headers={"Retry-After": "0"}, json={"message": "secondary rate limit"}),
            httpx.Response(200, json={}),
        ]
    )
    client = build_client(
        handler,
        lambda error, connection: rate_calls.append(1),
        abuse_limit_handler=AbuseLimitHandler.WAIT,
    )

    assert client.get(REPO_PATH).status_code == 200
    assert rate_calls == []
    assert handler.request_count == 2
    assert client.metrics.http_retries_total[(REPO_PATH, "secondary_rate_limit")] == 1


def test_secondary_rate_limit_fail() -> None:
    handler = CountingHandler([httpx.Response(403, headers={"Retry-After": "60"}, json={})])
    client = build_client(handler, RateLimitHandler.WAIT, abuse_limit_handler="fail")

    with pytest.raises(RateLimitExceededError) as excinfo:
        client.get(REPO_PATH)

    assert isinstance(excinfo.value.__cause__, HttpException)
    assert handler.request_count == 1


def test_post_body_is_resent_on_retry() -> None:
    bodies: list[bytes] = []
    responses = [rate_limited(), httpx.Response(201, json={"id": 1})]

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.read())
        return responses.pop(0)

    client = (
        ClientBuilder()
        .with_endpoint(BASE_URL)
        .with_transport(httpx.MockTransport(handler))
        .with_rate_limit_handler("wait")
        .build()
    )
    connection = client.create_connection("/repos", method="POST", body=b'{"name":"temp"}')

    assert client.execute(connection).status_code == 201
    assert bodies == [b'{"name":"temp"}', b'{"name":"temp"}']


def test_concurrent_requests_keep_independent_retry_loops() -> None:
    lock = threading.Lock()
    seen: set[str] = set()
    count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal count
        with lock:
            count += 1
            first = request.url.path not in seen
            seen.add(request.url.path)
        if first:
            return rate_limited()
        return httpx.Response(200, json={"path": request.url.path})

    client = (
        ClientBuilder()
        .with_endpoint(BASE_URL)
        .with_transport(httpx.MockTransport(handler))
        .with_rate_limit_handler(RateLimitHandler.WAIT)
        .build()
    )
    paths = [f"/repos/org/repo-{index}" for index in range(6)]

    with ThreadPoolExecutor(max_workers=3) as pool:
        statuses = list(pool.map(lambda path: client.get(path).status_code, paths))

    assert statuses == [200] * 6
    assert count == 12
    assert client.metrics.requests_total == 12


def test_rate_limit_events_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    handler = CountingHandler([rate_limited(), httpx.Response(200, json={})])
    client = build_client(handler, RateLimitHandler.WAIT)

    with caplog.at_level(logging.DEBUG, logger="limitguard"):
        client.get(REPO_PATH)

    events = [getattr(record, "event", None) for record in caplog.records]
    assert events.count("http_request") == 2
    assert "api_rate_limited" in events
    assert "state_transition" in events


def test_executor_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RequestExecutor(transport=None, max_attempts=0)  # type: ignore[arg-type]


@pytest.mark.parametrize("rate_limit_handler", [None, "wait", RateLimitHandler.WAIT])
def test_builder_wait_uses_injected_clock_and_bounds(fake_clock, rate_limit_handler) -> None:
    handler = CountingHandler([_rate_limited_at(int(fake_clock.now()), 30, 403), httpx.Response(200, json={})])
    builder = (
        ClientBuilder()
        .with_endpoint(BASE_URL)
        .with_transport(httpx.MockTransport(handler))
        .with_clock(fake_clock)
        .with_wait_bounds(5, 10)
    )
    if rate_limit_handler is not None:
        builder.with_rate_limit_handler(rate_limit_handler)

    assert builder.build().get(REPO_PATH).status_code == 200
    assert fake_clock.sleeps == [pytest.approx(10.0)]
    assert handler.request_count == 2


def test_builder_abuse_wait_uses_injected_clock(fake_clock) -> None:
    handler = CountingHandler(
        [httpx.Response(429, headers={"Retry-After": "120"}, json={}), httpx.Response(200, json={})]
    )
    client = (
        ClientBuilder()
        .with_endpoint(BASE_URL)
        .with_transport(httpx.MockTransport(handler))
        .with_abuse_limit_handler(AbuseLimitHandler.WAIT)
        .with_clock(fake_clock)
        .with_wait_bounds(5, 10)
        .build()
    )

    assert client.get(REPO_PATH).status_code == 200
    assert fake_clock.sleeps == [pytest.approx(10.0)]


def test_cancelled_wait_fails_the_request() -> None:
    handler = CountingHandler([rate_limited(reset_offset_s=30)], repeat_last=True)
    cancel = threading.Event()
    client = build_client(handler, RateLimitHandler.WAIT, clock=SystemClock(cancel_event=cancel))
    timer = threading.Timer(0.05, cancel.set)
    timer.start()

    try:
        with pytest.raises(WaitInterruptedError) as excinfo:
            client.get(REPO_PATH)
    finally:
        timer.cancel()

    assert isinstance(excinfo.value.__cause__, HttpException)
    assert excinfo.value.__cause__.status_code == 403
    assert handler.request_count == 1
