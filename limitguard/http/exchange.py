"""
Read-only views over a completed HTTP exchange.

An ``Exchange`` is the raw record of one request/response pair, captured
after the network layer has fully read the response. ``ResponseView``
exposes it through connection-style accessors: headers with
case-insensitive lookup, the status line addressable at index 0,
HTTP-date headers as epoch milliseconds, and body/error streams that
can be opened any number of times.

``RateLimitRecord`` is the quota snapshot parsed from the
``X-RateLimit-*`` response headers.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime
from types import MappingProxyType
from typing import Iterable, Mapping

from limitguard.http.errors import HttpException

_INTEGER_RE = re.compile(r"[+-]?\d+")
_INT_MIN, _INT_MAX = -(2**31), 2**31 - 1
_LONG_MIN, _LONG_MAX = -(2**63), 2**63 - 1


@dataclass(frozen=True)
class Exchange:
    """
    One finalized request/response pair.

    Attributes:
        method: Request method as sent (e.g. "GET").
        url: Absolute request URL.
        request_headers: Headers sent, in wire order.
        status_code: Response status code.
        reason: Response reason phrase.
        response_headers: Response headers, in wire order, original casing.
        body: Full response body. Served as the error stream when failed.
        http_version: Protocol version from the status line.
    """
    method: str
    url: str
    request_headers: tuple[tuple[str, str], ...]
    status_code: int
    reason: str
    response_headers: tuple[tuple[str, str], ...]
    body: bytes = b""
    http_version: str = "HTTP/1.1"

    @property
    def failed(self) -> bool:
        return self.status_code >= 400

    @property
    def status_line(self) -> str:
        return f"{self.http_version} {self.status_code} {self.reason}".rstrip()


@dataclass(frozen=True)
class RateLimitRecord:
    """
    Rate limit quota reported by the remote service.

    Attributes:
        limit: Requests allowed per window.
        remaining: Requests left in the current window (never negative).
        reset: Epoch seconds when the window resets.
        used: Requests consumed in the current window.
        resource: Name of the quota bucket, when the service reports one.
    """
    limit: int | None = None
    remaining: int | None = None
    reset: int | None = None
    used: int | None = None
    resource: str | None = None

    def __post_init__(self) -> None:
        if self.remaining is not None and self.remaining < 0:
            raise ValueError("remaining must be >= 0")

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0

    def seconds_until_reset(self, now: float) -> float | None:
        """Seconds from ``now`` (epoch seconds) until reset, or None if unknown."""
        if self.reset is None:
            return None
        return self.reset - now

    @classmethod
    def from_view(cls, view: ResponseView) -> RateLimitRecord | None:
        limit = view.header_as_long("X-RateLimit-Limit", None)
        remaining = view.header_as_long("X-RateLimit-Remaining", None)
        reset = view.header_as_long("X-RateLimit-Reset", None)
        used = view.header_as_long("X-RateLimit-Used", None)
        resource = view.header("X-RateLimit-Resource")
        if limit is None and remaining is None and reset is None:
            return None
        if remaining is not None and remaining < 0:
            remaining = None
        return cls(limit=limit, remaining=remaining, reset=reset, used=used, resource=resource)


def _parse_integer(value: str | None, low: int, high: int) -> int | None:
    if value is None:
        return None
    value = value.strip()
    if not _INTEGER_RE.fullmatch(value):
        return None
    number = int(value)
    if number < low or number > high:
        return None
    return number


def group_headers(pairs: Iterable[tuple[str, str]]) -> Mapping[str, tuple[str, ...]]:
    """Group header pairs case-insensitively under the first spelling seen."""
    grouped: dict[str, list[str]] = {}
    names: dict[str, str] = {}
    for name, value in pairs:
        grouped.setdefault(names.setdefault(name.lower(), name), []).append(value)
    return MappingProxyType({key: tuple(values) for key, values in grouped.items()})


def parse_http_date(value: str | None) -> int:
    """Parse an HTTP-date into epoch milliseconds; 0 when absent or malformed."""
    if not value:
        return 0
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class ResponseView:
    """
    Read-only accessor surface over an ``Exchange``.

    Every accessor can be called any number of times with the same
    result. Only the streams returned by ``body_stream`` and
    ``error_stream`` are consumed by reading, and each call returns a
    fresh stream over the captured bytes.
    """

    __slots__ = ("_exchange",)

    def __init__(self, exchange: Exchange) -> None:
        object.__setattr__(self, "_exchange", exchange)

    @property
    def exchange(self) -> Exchange:
        return self._exchange

    # Status

    def status(self) -> tuple[int, str]:
        return self._exchange.status_code, self._exchange.reason

    @property
    def status_code(self) -> int:
        return self._exchange.status_code

    @property
    def response_message(self) -> str:
        return self._exchange.reason

    @property
    def status_line(self) -> str:
        return self._exchange.status_line

    @property
    def failed(self) -> bool:
        return self._exchange.failed

    # Request

    @property
    def request_method(self) -> str:
        return self._exchange.method

    @property
    def url(self) -> str:
        return self._exchange.url

    def request_properties(self) -> Mapping[str, tuple[str, ...]]:
        """Request headers grouped by name, every value kept in send order."""
        return group_headers(self._exchange.request_headers)

    def request_property(self, name: str) -> str | None:
        """Last value sent for ``name``, or None."""
        wanted = name.lower()
        for key, value in reversed(self._exchange.request_headers):
            if key.lower() == wanted:
                return value
        return None

    # Headers

    def header(self, name: str) -> str | None:
        """Value of the last response header named ``name`` (case-insensitive)."""
        wanted = name.lower()
        found = None
        for key, value in self._exchange.response_headers:
            if key.lower() == wanted:
                found = value
        return found

    def header_as_int(self, name: str, default: int | None) -> int | None:
        parsed = _parse_integer(self.header(name), _INT_MIN, _INT_MAX)
        return default if parsed is None else parsed

    def header_as_long(self, name: str, default: int | None) -> int | None:
        parsed = _parse_integer(self.header(name), _LONG_MIN, _LONG_MAX)
        return default if parsed is None else parsed

    def all_headers(self) -> Mapping[str | None, tuple[str, ...]]:
        """
        Ordered multi-map of response headers.

        The ``None`` key maps to the status line. Header names keep the
        casing of their first occurrence; repeated headers are grouped.
        """
        grouped: dict[str | None, list[str]] = {None: [self.status_line]}
        names: dict[str, str] = {}
        for key, value in self._exchange.response_headers:
            canonical = names.setdefault(key.lower(), key)
            grouped.setdefault(canonical, []).append(value)
        return MappingProxyType({key: tuple(values) for key, values in grouped.items()})

    def header_key_at(self, index: int) -> str | None:
        if index <= 0 or index > len(self._exchange.response_headers):
            return None
        return self._exchange.response_headers[index - 1][0]

    def header_value_at(self, index: int) -> str | None:
        if index == 0:
            return self.status_line
        if index < 0 or index > len(self._exchange.response_headers):
            return None
        return self._exchange.response_headers[index - 1][1]

    # Dates and content metadata

    def date(self) -> int:
        return parse_http_date(self.header("Date"))

    def last_modified(self) -> int:
        return parse_http_date(self.header("Last-Modified"))

    def expiration(self) -> int:
        return parse_http_date(self.header("Expires"))

    def if_modified_since(self) -> int:
        return parse_http_date(self.request_property("If-Modified-Since"))

    def content_length(self) -> int:
        length = self.header_as_long("Content-Length", -1)
        return -1 if length is None or length < 0 else length

    def content_type(self) -> str | None:
        return self.header("Content-Type")

    def content_encoding(self) -> str | None:
        return self.header("Content-Encoding")

    def rate_limit(self) -> RateLimitRecord | None:
        return RateLimitRecord.from_view(self)

    # Streams

    def body_stream(self) -> io.BytesIO:
        """Response body; raises ``HttpException`` for a failed exchange, on every call."""
        if self._exchange.failed:
            raise HttpException.from_view(self)
        return io.BytesIO(self._exchange.body)

    def error_stream(self) -> io.BytesIO | None:
        """Error body for a failed exchange; None when the exchange succeeded."""
        if not self._exchange.failed:
            return None
        return io.BytesIO(self._exchange.body)

    def error_text(self) -> str:
        if not self._exchange.failed:
            return ""
        try:
            return self._exchange.body.decode(self._charset(), errors="replace")
        except LookupError:
            return self._exchange.body.decode("utf-8", errors="replace")

    def _charset(self) -> str:
        content_type = self.content_type() or ""
        for part in content_type.split(";")[1:]:
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                return value.strip('"')
        return "utf-8"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.request_method} {self.url} [{self.status_code}]>"
