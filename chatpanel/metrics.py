"""
Prometheus metrics for the chat panel.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook event outcome counter (result)
- Outbound send outcome counter (kind, result)
- Template refresh counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: stored, malformed, status, invalid_signature
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events by processing outcome",
    labelnames=["result"]
)

# result: sent, gateway_error, unrecorded, invalid
outbound_sends_total = Counter(
    "outbound_sends_total",
    "Outbound sends by kind and outcome",
    labelnames=["kind", "result"]
)

# result: ok, error
template_refresh_total = Counter(
    "template_refresh_total",
    "Template cache refreshes by outcome",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_event(result: str, count: int = 1) -> None:
    if count:
        webhook_events_total.labels(result=result).inc(count)


def record_outbound_send(kind: str, result: str) -> None:
    outbound_sends_total.labels(kind=kind, result=result).inc()


def record_template_refresh(result: str) -> None:
    template_refresh_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
