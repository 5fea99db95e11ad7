"""
Prometheus metrics for the API and the delivery pipeline.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Poller counters (polled, enqueued, per-record failures)
- Delivery outcome counter (status) and provider latency histogram
- Work queue depth gauge and dead-letter counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

message_create_requests_total = Counter(
    "message_create_requests_total",
    "Message creation outcomes",
    labelnames=["result"]  # created, invalid_signature, validation_error, error
)

messages_polled_total = Counter(
    "messages_polled_total",
    "Pending messages read by the poller"
)

messages_enqueued_total = Counter(
    "messages_enqueued_total",
    "Messages handed to the work queue and marked Queued"
)

poll_failures_total = Counter(
    "poll_failures_total",
    "Poller failures by scope",
    labelnames=["scope"]  # batch, record
)

delivery_outcomes_total = Counter(
    "delivery_outcomes_total",
    "Terminal statuses written by the consumer",
    labelnames=["status"]
)

# Default buckets top out at 10s, matching the provider client timeout
provider_request_seconds = Histogram(
    "provider_request_seconds",
    "Delivery provider call latency in seconds"
)

tasks_dead_lettered_total = Counter(
    "tasks_dead_lettered_total",
    "Work queue tasks removed from redelivery",
    labelnames=["reason"]
)

work_queue_depth = Gauge(
    "work_queue_depth",
    "Live tasks in the work queue at last measurement"
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
    if normalized_path.startswith("/messages/"):
        normalized_path = "/messages/{id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_create_outcome(result: str) -> None:
    message_create_requests_total.labels(result=result).inc()


def record_poll(found: int, enqueued: int, failed: int) -> None:
    messages_polled_total.inc(found)
    messages_enqueued_total.inc(enqueued)
    if failed:
        poll_failures_total.labels(scope="record").inc(failed)


def record_poll_batch_failure() -> None:
    poll_failures_total.labels(scope="batch").inc()


def record_delivery_outcome(status: str) -> None:
    delivery_outcomes_total.labels(status=status).inc()


def record_provider_latency(latency_seconds: float) -> None:
    provider_request_seconds.observe(latency_seconds)


def record_dead_letter(reason: str) -> None:
    tasks_dead_lettered_total.labels(reason=reason).inc()


def set_queue_depth(depth: int) -> None:
    work_queue_depth.set(depth)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
