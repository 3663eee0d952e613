"""
Prometheus metrics, kept in-process and exposed on GET /metrics.

HTTP traffic is labelled by route template rather than raw path so ids never
become label values.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served, by route and status",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Time spent serving HTTP requests",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# message_type: text, image, call
messages_created_total = Counter(
    "messages_created_total",
    "Messages stored, by type",
    labelnames=["message_type"],
)

# table: messages, profiles, conversation_participants, broadcast
realtime_events_total = Counter(
    "realtime_events_total",
    "Events pushed to the change feed",
    labelnames=["table"],
)

realtime_connections = Gauge(
    "realtime_connections",
    "Open realtime WebSocket connections",
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Args:
        method: HTTP verb
        path: Route template, e.g. /conversations/{conversation_id}/messages
        status: Response status code
        latency_seconds: Wall time from first byte in to response ready
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_message_created(message_type: str) -> None:
    messages_created_total.labels(message_type=message_type).inc()


def record_realtime_event(table: str) -> None:
    realtime_events_total.labels(table=table).inc()


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
