"""
Prometheus metrics for the Chatcast API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Recorded event outcome counter (result)
- Session transition counter (transition)
- Reconciled session counter

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

# result: accepted, dropped_paused, ignored, title_assigned, title_rejected
recorded_events_total = Counter(
    "recorded_events_total",
    "Inbound chat events by recording outcome",
    labelnames=["result"]
)

# transition: start, pause, resume, complete
session_transitions_total = Counter(
    "session_transitions_total",
    "Recording session status transitions",
    labelnames=["transition"]
)

reconciled_sessions_total = Counter(
    "reconciled_sessions_total",
    "Sessions whose status was corrected by the reconciler"
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
    # Collapse per-session paths to avoid high-cardinality labels
    if normalized_path.startswith("/session/"):
        normalized_path = "/session/{id}" + ("/status" if normalized_path.endswith("/status") else "")

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_event_outcome(result: str) -> None:
    recorded_events_total.labels(result=result).inc()


def record_session_transition(transition: str) -> None:
    session_transitions_total.labels(transition=transition).inc()


def record_reconciled_sessions(count: int) -> None:
    if count > 0:
        reconciled_sessions_total.inc(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
