from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "manto_server_requests_total",
    "Total HTTP requests handled by the relay",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "manto_server_request_latency_seconds",
    "Relay HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["path"],
)

server_errors_total = Counter(
    "manto_server_errors_total",
    "Total error responses returned by the relay",
    labelnames=["type"],
)

upstream_requests_total = Counter(
    "manto_upstream_requests_total",
    "Total calls made to the upstream provider",
    labelnames=["provider", "endpoint", "outcome"],
)

upstream_latency_seconds = Histogram(
    "manto_upstream_latency_seconds",
    "Upstream provider call latency",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider", "endpoint"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
