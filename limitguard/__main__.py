from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from secrets import token_hex

from limitguard.client import ClientBuilder
from limitguard.config import ConfigError, load_config
from limitguard.http.errors import ApiIOError, RateLimitExceededError, RetryExhaustedError
from limitguard.obs.logging import LogSettings, build_logger, log_event
from limitguard.obs.metrics import summarize_api_health, update_http_metrics

EXIT_OK = 0
EXIT_HTTP_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_RATE_LIMITED = 3


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rate limit aware HTTP client")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser("fetch", help="Execute one request and print the body")
    fetch_parser.add_argument("--config", required=True, help="Path to config YAML")
    fetch_parser.add_argument("--path", required=True, help="Request path relative to base_url")
    fetch_parser.add_argument("--method", default="GET", help="HTTP method")
    fetch_parser.add_argument("--handler", choices=["fail", "wait"], help="Override rate limit handler")
    fetch_parser.add_argument("--max-attempts", type=int, help="Override retry ceiling")
    fetch_parser.add_argument("--log-level", help="Logging level")
    fetch_parser.add_argument("--metrics-out", help="Write request metrics JSON to this file")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.command != "fetch":
        raise ValueError(f"Unsupported command: {args.command}")

    session_id = token_hex(4)
    logger = build_logger(LogSettings(level="INFO", session_id=session_id, log_file=None, jsonl=True))

    try:
        loaded = load_config(Path(args.config))
    except ConfigError as exc:
        log_event(logger, 40, "config_invalid", str(exc))
        return EXIT_CONFIG_ERROR

    obs = loaded.config.obs
    logger = build_logger(
        LogSettings(
            level=(args.log_level or obs.log_level).upper(),
            session_id=session_id,
            log_file=None,
            jsonl=obs.log_jsonl,
        )
    )

    builder = ClientBuilder.from_config(loaded.config.client).with_logger(logger)
    if args.handler:
        builder.with_rate_limit_handler(args.handler)
    if args.max_attempts is not None:
        try:
            builder.with_max_attempts(args.max_attempts)
        except ValueError as exc:
            log_event(logger, 40, "config_invalid", str(exc))
            return EXIT_CONFIG_ERROR

    exit_code = EXIT_OK
    with builder.build() as client:
        try:
            request = client.create_connection(args.path, method=args.method)
        except ValueError as exc:
            log_event(logger, 40, "config_invalid", str(exc))
            return EXIT_CONFIG_ERROR
        try:
            connection = client.execute(request)
        except (RateLimitExceededError, RetryExhaustedError) as exc:
            log_event(logger, 40, "rate_limited", str(exc), cause=repr(exc.__cause__))
            exit_code = EXIT_RATE_LIMITED
        except ApiIOError as exc:
            log_event(logger, 40, "request_failed", str(exc))
            exit_code = EXIT_HTTP_ERROR
        else:
            sys.stdout.write(connection.body_stream().read().decode("utf-8", errors="replace"))
            sys.stdout.write("\n")

        if args.metrics_out:
            metrics_path = Path(args.metrics_out)
            update_http_metrics(metrics_path, client.metrics)
            payload = json.loads(metrics_path.read_text(encoding="utf-8"))
            log_event(logger, 20, "api_health", "API health summary", **summarize_api_health(payload))

    log_event(logger, 20, "fetch_complete", "Fetch complete", exit_code=exit_code)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
