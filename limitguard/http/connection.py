"""
Live and finalized connection objects.

``LiveConnection`` is the mutable request a caller configures before it
is sent: method, headers, body, timeouts and transfer flags.

``FinalizedConnection`` is what callers (and rate limit handlers) get
back once an exchange has completed. It answers every read-only
question about the exchange, and rejects every operation that only
makes sense on a connection that is still open. ``disconnect`` and
``close`` are the exceptions: they are always safe and do nothing.
"""

from __future__ import annotations

import io
from email.utils import formatdate
from typing import Iterable, Iterator, Mapping, NoReturn

from limitguard.http.errors import ApiIOError, UnsupportedOperationError
from limitguard.http.exchange import ResponseView, group_headers

HTTP_METHODS = frozenset({"GET", "POST", "HEAD", "OPTIONS", "PUT", "DELETE", "TRACE", "PATCH"})


class LiveConnection:
    """
    A request that has not been sent yet.

    The executor may send the same ``LiveConnection`` several times
    (one per retry attempt); nothing in it is consumed by sending.
    """

    def __init__(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Iterable[tuple[str, str]] | Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> None:
        self.url = url
        self.method = method
        self.connect_timeout: float | None = None
        self.read_timeout: float | None = None
        self.follow_redirects = True
        self.use_caches = True
        self.do_input = True
        self.do_output = body is not None
        self.if_modified_since = 0
        self._headers: list[tuple[str, str]] = []
        self._body = body
        self._output: io.BytesIO | None = None
        self._chunk_length: int | None = None
        self._fixed_length: int | None = None
        if isinstance(headers, Mapping):
            headers = headers.items()
        for name, value in headers or ():
            self.add_request_property(name, value)

    @property
    def method(self) -> str:
        return self._method

    @method.setter
    def method(self, value: str) -> None:
        method = value.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Invalid HTTP method: {value}")
        self._method = method

    # Request headers

    def set_request_property(self, name: str, value: str) -> None:
        """Replace every header named ``name`` with a single value."""
        wanted = name.lower()
        self._headers = [(key, val) for key, val in self._headers if key.lower() != wanted]
        self._headers.append((name, value))

    def add_request_property(self, name: str, value: str) -> None:
        if not name:
            raise ValueError("Header name must not be empty")
        self._headers.append((name, value))

    def request_property(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in reversed(self._headers):
            if key.lower() == wanted:
                return value
        return None

    def request_properties(self) -> Mapping[str, tuple[str, ...]]:
        return group_headers(self._headers)

    def wire_headers(self) -> list[tuple[str, str]]:
        """Headers to put on the wire, including ones derived from flags."""
        headers = list(self._headers)
        if self.if_modified_since > 0 and self.request_property("If-Modified-Since") is None:
            headers.append(("If-Modified-Since", formatdate(self.if_modified_since / 1000, usegmt=True)))
        if not self.use_caches and self.request_property("Cache-Control") is None:
            headers.append(("Cache-Control", "no-cache"))
        return headers

    # Body

    def output_stream(self) -> io.BytesIO:
        if not self.do_output:
            raise ApiIOError("Cannot write output when do_output is False", url=self.url)
        if self._output is None:
            self._output = io.BytesIO()
            if self._body:
                self._output.write(self._body)
        return self._output

    def set_chunked_streaming_mode(self, chunk_length: int) -> None:
        if self._fixed_length is not None:
            raise ValueError("Fixed length streaming mode already set")
        self._chunk_length = chunk_length if chunk_length > 0 else 4096

    def set_fixed_length_streaming_mode(self, content_length: int) -> None:
        if self._chunk_length is not None:
            raise ValueError("Chunked streaming mode already set")
        if content_length < 0:
            raise ValueError("Invalid content length")
        self._fixed_length = content_length

    def payload(self) -> bytes | None:
        if self._output is not None:
            data: bytes | None = self._output.getvalue()
        else:
            data = self._body
        if self._fixed_length is not None and len(data or b"") != self._fixed_length:
            raise ApiIOError(
                f"Expected {self._fixed_length} bytes of output, got {len(data or b'')}",
                url=self.url,
            )
        return data

    def content(self) -> bytes | Iterator[bytes] | None:
        """Body as handed to the transport: chunked bodies become an iterator."""
        data = self.payload()
        if data is None or self._chunk_length is None:
            return data
        size = self._chunk_length
        return (data[start : start + size] for start in range(0, len(data), size))

    def __repr__(self) -> str:
        return f"<LiveConnection {self.method} {self.url}>"


def _unsupported(operation: str) -> NoReturn:
    raise UnsupportedOperationError(operation)


def _unsupported_property(name: str) -> property:
    def getter(self: FinalizedConnection) -> NoReturn:
        _unsupported(name)

    return property(getter, doc=f"Not available once the exchange is finalized ({name}).")


class FinalizedConnection(ResponseView):
    """
    A completed exchange exposed through the connection interface.

    Reads delegate to ``ResponseView``. Everything that would reopen,
    reconfigure or write to the connection raises
    ``UnsupportedOperationError`` on every call, including any attribute
    assignment.
    """

    __slots__ = ()

    connect_timeout = _unsupported_property("connect_timeout")
    read_timeout = _unsupported_property("read_timeout")
    follow_redirects = _unsupported_property("follow_redirects")
    use_caches = _unsupported_property("use_caches")
    default_use_caches = _unsupported_property("default_use_caches")
    allow_user_interaction = _unsupported_property("allow_user_interaction")
    do_input = _unsupported_property("do_input")
    do_output = _unsupported_property("do_output")

    def __setattr__(self, name: str, value: object) -> None:
        _unsupported(f"setting {name}")

    def __delattr__(self, name: str) -> None:
        _unsupported(f"deleting {name}")

    def connect(self) -> NoReturn:
        _unsupported("connect")

    def output_stream(self) -> NoReturn:
        _unsupported("output_stream")

    def content(self, *types: type) -> NoReturn:
        _unsupported("content")

    def permission(self) -> NoReturn:
        _unsupported("permission")

    def using_proxy(self) -> NoReturn:
        _unsupported("using_proxy")

    def add_request_property(self, name: str, value: str) -> NoReturn:
        _unsupported("add_request_property")

    def set_request_property(self, name: str, value: str) -> NoReturn:
        _unsupported("set_request_property")

    def set_chunked_streaming_mode(self, chunk_length: int) -> NoReturn:
        _unsupported("set_chunked_streaming_mode")

    def set_fixed_length_streaming_mode(self, content_length: int) -> NoReturn:
        _unsupported("set_fixed_length_streaming_mode")

    def disconnect(self) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> FinalizedConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
