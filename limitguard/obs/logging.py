"""
Structured JSON Lines logging for HTTP request tracing.

Each log entry is a single JSON object with:
- Timestamp (ISO 8601 UTC)
- Log level
- Session ID for correlating the requests of one client
- Event type for filtering
- Module name
- Human-readable message
- Extra structured data

Example log entry:
    {"ts": "2026-01-15T10:30:00Z", "level": "WARNING", "session_id": "abc123",
     "event": "api_rate_limited", "module": "executor",
     "msg": "Rate limit exhausted; invoking handler",
     "extra": {"url": "https://api.example.com/user", "attempt": 1, "status": 403}}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class LogSettings:
    """
    Configuration for logger initialization.

    Attributes:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        session_id: Identifier included in every entry.
        log_file: Optional path to log file (None for console only).
        jsonl: If True, use JSON Lines format; otherwise plain text.
    """
    level: str
    session_id: str
    log_file: Path | None
    jsonl: bool


class JsonLineFormatter(logging.Formatter):
    def __init__(self, session_id: str):
        super().__init__()
        self._session_id = session_id

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "event", "log")
        extra = getattr(record, "extra", {})
        if not isinstance(extra, dict):
            extra = {"value": extra}

        payload = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "session_id": self._session_id,
            "event": event,
            "module": record.module,
            "msg": record.getMessage(),
            "extra": extra,
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def build_logger(settings: LogSettings) -> logging.Logger:
    """
    Configure the ``limitguard`` logger hierarchy.

    Handlers are attached to the package root logger so that events
    emitted by ``limitguard.http.*`` modules reach them. Calling this
    again replaces the previous handlers.

    Args:
        settings: LogSettings with level, session id, file path, and format.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("limitguard")
    logger.setLevel(settings.level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = JsonLineFormatter(settings.session_id) if settings.jsonl else None

    stream_handler = logging.StreamHandler()
    if formatter:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        if formatter:
            file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    message: str,
    *,
    exc_info: logging._ExcInfoType | None = None,
    **extra: Any,
) -> None:
    """
    Log a structured event with typed metadata.

    Args:
        logger: Logger instance to use.
        level: Log level (logging.DEBUG, INFO, WARNING, ERROR).
        event: Event type identifier (e.g., "http_request", "retry_exhausted").
        message: Human-readable log message.
        exc_info: Optional exception info for error logging.
        **extra: Additional key-value pairs to include in log entry.

    Example:
        >>> log_event(logger, logging.INFO, "http_request",
        ...           "GET /user", status=200, attempt=1)
    """
    logger.log(level, message, extra={"event": event, "extra": extra}, exc_info=exc_info)
