"""
Error taxonomy for rate-limit aware HTTP requests.

Every I/O-level failure raised by the request path derives from
``ApiIOError`` (an ``OSError``), so callers can catch a single type:

- **HttpException**: the remote answered with a failing status code.
  This is the "original failure" every other error chains back to.
- **TransportFailure**: the network call itself failed (DNS, connect,
  timeout). Never routed to a rate limit handler.
- **RateLimitExceededError**: a FAIL handler gave up on a classified
  rate limit. Raised ``from`` the HttpException.
- **RetryExhaustedError**: the retry ceiling was crossed while handlers
  kept asking for another attempt. Raised ``from`` the last HttpException.
- **HandlerError**: a custom handler raised something that is not an
  ``ApiIOError``. Raised ``from`` the HttpException; the handler's
  exception is kept on ``handler_exception``.
- **WaitInterruptedError**: a WAIT handler's sleep was cancelled.

``UnsupportedOperationError`` is separate: it signals misuse of a
finalized connection and is not an I/O condition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from limitguard.http.exchange import ResponseView


class ApiIOError(OSError):
    """
    Base exception for all I/O-level request failures.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code (None for non-HTTP errors).
        response_message: HTTP reason phrase if a response was received.
        url: Request URL if known.
        response_text: Raw response body text.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_message: str | None = None,
        url: str | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_message = response_message
        self.url = url
        self.response_text = response_text

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.url:
            parts.append(f"url={self.url}")
        if self.response_text:
            parts.append(f"response={self.response_text}")
        return " | ".join(parts)


class HttpException(ApiIOError):
    """
    The remote service returned a failing (>= 400) status code.

    Keeps the response headers so that callers holding only the
    exception can still inspect rate limit signals.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_message: str | None = None,
        url: str | None = None,
        response_text: str | None = None,
        headers: Sequence[tuple[str, str]] = (),
    ) -> None:
        super().__init__(
            message,
            status_code=status_code,
            response_message=response_message,
            url=url,
            response_text=response_text,
        )
        self.headers = tuple(headers)

    @classmethod
    def from_view(cls, view: ResponseView) -> HttpException:
        error_text = view.error_text()
        return cls(
            f"Server returned HTTP response code: {view.status_code} for URL: {view.url}",
            status_code=view.status_code,
            response_message=view.response_message,
            url=view.url,
            response_text=error_text or None,
            headers=view.exchange.response_headers,
        )


class TransportFailure(ApiIOError):
    """Network-level failure: no response was received."""


class RateLimitExceededError(ApiIOError):
    """A FAIL handler refused to wait out an exhausted rate limit."""


class RetryExhaustedError(ApiIOError):
    """The retry ceiling was reached while handlers kept requesting retries."""

    def __init__(self, message: str, *, attempts: int, url: str | None = None) -> None:
        super().__init__(message, url=url)
        self.attempts = attempts


class HandlerError(ApiIOError):
    """A custom handler failed with a non-I/O exception."""

    def __init__(
        self,
        message: str,
        *,
        handler_exception: BaseException,
        status_code: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, url=url)
        self.handler_exception = handler_exception


class WaitInterruptedError(ApiIOError):
    """A rate limit wait was cancelled before it completed."""


class UnsupportedOperationError(RuntimeError):
    """An operation that requires a live connection was called on a finalized one."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} is not supported on a finalized connection")
        self.operation = operation
