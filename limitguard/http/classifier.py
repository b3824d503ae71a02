"""
Failure classification for completed exchanges.

Only exchanges reach the classifier: a transport failure never produced
a response, so it is raised before classification and can never be
mistaken for a rate limit.

Classification Strategy:
    non-2xx + X-RateLimit-Remaining == 0        → RATE_LIMIT
    403/429 + Retry-After                       → SECONDARY_RATE_LIMIT
    429 without quota headers                   → SECONDARY_RATE_LIMIT
    401, or 403 without a limit signal          → AUTH
    404                                         → NOT_FOUND
    other 4xx                                   → CLIENT_ERROR
    5xx                                         → SERVER_ERROR
"""

from __future__ import annotations

from enum import Enum

from limitguard.http.exchange import ResponseView


class FailureKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    SECONDARY_RATE_LIMIT = "secondary_rate_limit"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.RATE_LIMIT, FailureKind.SECONDARY_RATE_LIMIT)


class FailureClassifier:
    def __init__(
        self,
        *,
        remaining_header: str = "X-RateLimit-Remaining",
        retry_after_header: str = "Retry-After",
    ) -> None:
        self._remaining_header = remaining_header
        self._retry_after_header = retry_after_header

    def classify(self, view: ResponseView) -> FailureKind | None:
        """Return the failure kind, or None when the exchange did not fail."""
        if not view.failed:
            return None
        status = view.status_code
        if self.is_rate_limited(view):
            return FailureKind.RATE_LIMIT
        if self.is_secondary_rate_limited(view):
            return FailureKind.SECONDARY_RATE_LIMIT
        if status in (401, 403):
            return FailureKind.AUTH
        if status == 404:
            return FailureKind.NOT_FOUND
        if status >= 500:
            return FailureKind.SERVER_ERROR
        return FailureKind.CLIENT_ERROR

    def is_rate_limited(self, view: ResponseView) -> bool:
        if 200 <= view.status_code < 300:
            return False
        return view.header_as_long(self._remaining_header, None) == 0

    def is_secondary_rate_limited(self, view: ResponseView) -> bool:
        if view.status_code not in (403, 429):
            return False
        if view.header(self._retry_after_header) is not None:
            return True
        return view.status_code == 429 and view.header(self._remaining_header) is None
