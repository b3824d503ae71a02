from limitguard.http.classifier import FailureClassifier, FailureKind
from limitguard.http.connection import FinalizedConnection, LiveConnection
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
from limitguard.http.exchange import Exchange, RateLimitRecord, ResponseView
from limitguard.http.executor import RequestExecutor, RequestState
from limitguard.http.handlers import AbuseLimitHandler, RateLimitHandler

__all__ = [
    "AbuseLimitHandler",
    "ApiIOError",
    "Exchange",
    "FailureClassifier",
    "FailureKind",
    "FinalizedConnection",
    "HandlerError",
    "HttpException",
    "LiveConnection",
    "RateLimitExceededError",
    "RateLimitHandler",
    "RateLimitRecord",
    "RequestExecutor",
    "RequestState",
    "ResponseView",
    "RetryExhaustedError",
    "TransportFailure",
    "UnsupportedOperationError",
    "WaitInterruptedError",
]
