from __future__ import annotations

import json
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_LATENCY_BUCKETS_MS = (25, 50, 100, 250, 500, 1000, 2000, 5000)


@dataclass
class ClientMetrics:
    """
    Per-client request counters.

    Shared by every request a client executes, so updates go through a
    lock. ``requests_total`` counts network attempts, retries included.
    """
    http_requests_total: dict[tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))
    http_retries_total: dict[tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))
    http_latency_ms: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_request(self, path: str, status: str, latency_ms: float) -> None:
        with self._lock:
            self.http_requests_total[(path, status)] += 1
            self.http_latency_ms[path].append(latency_ms)

    def record_retry(self, path: str, reason: str) -> None:
        with self._lock:
            self.http_retries_total[(path, reason)] += 1

    @property
    def requests_total(self) -> int:
        with self._lock:
            return sum(self.http_requests_total.values())

    def requests_for(self, path: str) -> int:
        with self._lock:
            return sum(count for (key, _status), count in self.http_requests_total.items() if key == path)


def _read_metrics(metrics_path: Path) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if metrics_path.exists():
        raw = metrics_path.read_text(encoding="utf-8").strip()
        if raw:
            payload = json.loads(raw)
    return payload


def _write_metrics(metrics_path: Path, payload: dict[str, Any]) -> None:
    metrics_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def update_http_metrics(metrics_path: Path, metrics: ClientMetrics) -> None:
    payload = _read_metrics(metrics_path)

    with metrics._lock:
        requests = dict(metrics.http_requests_total)
        retries = dict(metrics.http_retries_total)
        latencies = [value for values in metrics.http_latency_ms.values() for value in values]

    requests_by_status: dict[str, int] = {}
    errors_total = 0
    for (_path, status), count in requests.items():
        requests_by_status[status] = requests_by_status.get(status, 0) + count
        try:
            status_code = int(status)
        except (TypeError, ValueError):
            errors_total += count
        else:
            if not 200 <= status_code < 300:
                errors_total += count

    retries_by_reason: dict[str, int] = {}
    for (_path, reason), count in retries.items():
        retries_by_reason[reason] = retries_by_reason.get(reason, 0) + count

    http_5xx_total = 0
    for status, count in requests_by_status.items():
        try:
            status_code = int(status)
        except (TypeError, ValueError):
            continue
        if 500 <= status_code <= 599:
            http_5xx_total += count

    buckets: dict[str, int] = {}
    for bound in _LATENCY_BUCKETS_MS:
        buckets[str(bound)] = sum(1 for value in latencies if value <= bound)
    buckets["+inf"] = len(latencies)

    payload.update(
        {
            "requests_total": sum(requests.values()),
            "errors_total": errors_total,
            "retries_total": sum(retries.values()),
            "retries_by_reason": retries_by_reason,
            "requests_by_status": requests_by_status,
            "rate_limit_retries_total": retries_by_reason.get("rate_limit", 0),
            "secondary_rate_limit_retries_total": retries_by_reason.get("secondary_rate_limit", 0),
            "http_5xx_total": http_5xx_total,
            "latency_ms": {
                "count": len(latencies),
                "min": min(latencies) if latencies else None,
                "max": max(latencies) if latencies else None,
                "buckets": buckets,
            },
        }
    )

    _write_metrics(metrics_path, payload)


def summarize_api_health(payload: dict[str, Any]) -> dict[str, int | str]:
    rate_limit_retries = int(payload.get("rate_limit_retries_total") or 0)
    secondary_retries = int(payload.get("secondary_rate_limit_retries_total") or 0)
    http_403_total = int((payload.get("requests_by_status") or {}).get("403") or 0)
    http_429_total = int((payload.get("requests_by_status") or {}).get("429") or 0)
    http_5xx_total = int(payload.get("http_5xx_total") or 0)

    if http_5xx_total > 0:
        api_health = "api_unstable"
    elif rate_limit_retries or secondary_retries or http_403_total or http_429_total:
        api_health = "degraded"
    else:
        api_health = "ok"

    return {
        "api_health": api_health,
        "rate_limit_retries_total": rate_limit_retries,
        "secondary_rate_limit_retries_total": secondary_retries,
        "http_403_total": http_403_total,
        "http_429_total": http_429_total,
        "http_5xx_total": http_5xx_total,
    }
