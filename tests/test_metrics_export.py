import json
from pathlib import Path

import httpx
import pytest

from limitguard.client import ApiClient, ClientBuilder
from limitguard.http.errors import RetryExhaustedError
from limitguard.obs.metrics import summarize_api_health, update_http_metrics


def _build_client(transport: httpx.BaseTransport, *, max_attempts: int = 2) -> ApiClient:
    return (
        ClientBuilder()
        .with_endpoint("https://api.example.test")
        .with_transport(transport)
        .with_rate_limit_handler(lambda error, connection: None)
        .with_max_attempts(max_attempts)
        .build()
    )


def _read_metrics(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def test_metrics_export_counts_successful_request(tmp_path: Path) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"login": "octocat"})

    client = _build_client(httpx.MockTransport(handler))
    client.get("/user")

    metrics_path = tmp_path / "metrics.json"
    metrics_path.write_text("{}", encoding="utf-8")
    update_http_metrics(metrics_path, client.metrics)
    payload = _read_metrics(metrics_path)

    assert payload["requests_total"] == 1
    assert payload["errors_total"] == 0
    assert payload["requests_by_status"]["200"] == 1
    assert payload["rate_limit_retries_total"] == 0
    assert payload["latency_ms"]["count"] == 1
    assert summarize_api_health(payload)["api_health"] == "ok"


def test_metrics_export_counts_rate_limit_retries(tmp_path: Path) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(403, headers={"X-RateLimit-Remaining": "0"}, json={"message": "rate limit"})

    client = _build_client(httpx.MockTransport(handler), max_attempts=3)

    with pytest.raises(RetryExhaustedError):
        client.get("/user")

    metrics_path = tmp_path / "metrics.json"
    update_http_metrics(metrics_path, client.metrics)
    payload = _read_metrics(metrics_path)

    assert payload["requests_total"] == 3
    assert payload["errors_total"] == 3
    assert payload["retries_total"] == 2
    assert payload["requests_by_status"]["403"] == 3
    assert payload["rate_limit_retries_total"] == 2
    assert summarize_api_health(payload)["api_health"] == "degraded"


def test_metrics_export_preserves_existing_keys(tmp_path: Path) -> None:
    metrics_path = tmp_path / "metrics.json"
    metrics_path.write_text(json.dumps({"session": "abc"}), encoding="utf-8")

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    client = _build_client(httpx.MockTransport(handler))
    client.fetch_status_code("/user")
    update_http_metrics(metrics_path, client.metrics)
    payload = _read_metrics(metrics_path)

    assert payload["session"] == "abc"
    assert payload["http_5xx_total"] == 1
    assert summarize_api_health(payload)["api_health"] == "api_unstable"
