"""
Prometheus metrics for the ingestion service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Intent outcome counter (kind, result)
- Realtime fan-out counter (event, result)

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

# result: ok, malformed, invalid_json, store_unavailable
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# kind: contact_upsert, message_upsert, status_update, message_overwrite
# result: created, updated, duplicate, target_not_found, failed
ingest_intents_total = Counter(
    "ingest_intents_total",
    "Total intents applied to the store by outcome",
    labelnames=["kind", "result"]
)

# result: published, failed
realtime_events_total = Counter(
    "realtime_events_total",
    "Total realtime events handed to subscribers",
    labelnames=["event", "result"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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
    # Normalize path to avoid high-cardinality labels
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


def record_webhook_outcome(result: str) -> None:
    """Record the overall outcome of one webhook call."""
    webhook_requests_total.labels(result=result).inc()


def record_intent_outcome(kind: str, result: str) -> None:
    """Record the outcome of applying one intent."""
    ingest_intents_total.labels(kind=kind, result=result).inc()


def record_realtime_event(event: str, result: str) -> None:
    """Record one realtime delivery attempt."""
    realtime_events_total.labels(event=event, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
