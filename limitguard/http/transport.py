from __future__ import annotations

from typing import Mapping, Protocol

import httpx

from limitguard.http.connection import LiveConnection
from limitguard.http.errors import TransportFailure
from limitguard.http.exchange import Exchange


class Transport(Protocol):
    def send(self, connection: LiveConnection) -> Exchange:
        """Perform exactly one network attempt and capture the full exchange."""

    def close(self) -> None:
        ...


def _decode_pairs(headers: httpx.Headers) -> tuple[tuple[str, str], ...]:
    encoding = headers.encoding
    return tuple((key.decode(encoding), value.decode(encoding)) for key, value in headers.raw)


def exchange_from_response(request: httpx.Request, response: httpx.Response, body: bytes) -> Exchange:
    return Exchange(
        method=request.method,
        url=str(request.url),
        request_headers=_decode_pairs(request.headers),
        status_code=response.status_code,
        reason=response.reason_phrase,
        response_headers=_decode_pairs(response.headers),
        body=body,
        http_version=response.http_version,
    )


class HttpxTransport:
    """
    Transport backed by an ``httpx.Client``.

    The response body is read completely before ``send`` returns, so the
    resulting ``Exchange`` holds no open network resources.
    """

    def __init__(
        self,
        *,
        base_url: str = "",
        timeout_s: float = 10.0,
        headers: Mapping[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    def send(self, connection: LiveConnection) -> Exchange:
        timeout = httpx.Timeout(
            self._timeout_s,
            connect=connection.connect_timeout if connection.connect_timeout is not None else self._timeout_s,
            read=connection.read_timeout if connection.read_timeout is not None else self._timeout_s,
        )
        request = self._client.build_request(
            connection.method,
            connection.url,
            headers=connection.wire_headers(),
            content=connection.content(),
            timeout=timeout,
        )
        try:
            response = self._client.send(
                request,
                follow_redirects=connection.follow_redirects,
                stream=True,
            )
            try:
                body = response.read() if connection.do_input else b""
            finally:
                response.close()
        except httpx.RequestError as exc:
            raise TransportFailure(f"Request failed: {exc}", url=str(request.url)) from exc
        return exchange_from_response(response.request, response, body)

    def close(self) -> None:
        self._client.close()
