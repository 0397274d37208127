"""Prometheus metrics for the relay service."""

from __future__ import annotations

import time

from prometheus_client import Counter, Gauge, Histogram

registration_total = Counter(
    "relay_registration_total",
    "Number of registration attempts grouped by outcome",
    ["outcome"],
)

login_attempt_total = Counter(
    "relay_login_attempt_total",
    "Number of login attempts grouped by outcome",
    ["outcome"],
)

token_refresh_total = Counter(
    "relay_token_refresh_total",
    "Refresh token exchanges grouped by outcome",
    ["outcome"],
)

relay_frames_total = Counter(
    "relay_frames_total",
    "Frames written to browser event streams",
)

relay_poll_failures_total = Counter(
    "relay_poll_failures_total",
    "Upstream long-poll failures grouped by outcome",
    ["reason"],
)

relay_active_connections = Gauge(
    "relay_active_connections",
    "Browser event streams currently open",
)

upstream_circuit_open = Gauge(
    "relay_upstream_circuit_open",
    "1 while the upstream circuit breaker rejects calls, else 0",
)

_UPSTREAM_REQUESTS_TOTAL = Counter(
    "relay_upstream_requests_total",
    "Total number of upstream chat API calls",
    ["method", "status"],
)

_UPSTREAM_LATENCY_SECONDS = Histogram(
    "relay_upstream_latency_seconds",
    "Latency of upstream chat API calls",
    ["method"],
    buckets=(
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        15.0,
        30.0,
        60.0,
        100.0,
    ),
)


def record_upstream_result(method: str, status_code: int, elapsed_seconds: float) -> None:
    """Record the result and latency of an upstream call."""
    _UPSTREAM_REQUESTS_TOTAL.labels(method=method, status=str(status_code)).inc()
    _UPSTREAM_LATENCY_SECONDS.labels(method=method).observe(elapsed_seconds)


class TimedCall:
    """Context manager to time upstream calls and emit metrics."""

    def __init__(self, method: str) -> None:
        self.method = method
        self.status_code = 200
        self._start = 0.0

    def __enter__(self) -> TimedCall:
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        elapsed = time.perf_counter() - self._start
        status = 599 if exc_type else self.status_code
        record_upstream_result(self.method, status, elapsed)
