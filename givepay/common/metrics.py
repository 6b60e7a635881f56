"""Prometheus metric definitions for the donations service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Webhook notifications by acknowledgment outcome",
    ["service", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Redelivered notifications acknowledged without effects",
    ["service", "event_type"],
)
reconciliation_latency_seconds = Histogram(
    "reconciliation_latency_seconds",
    "Duration of one reconciliation unit of work",
    ["service", "terminal_state"],
)
donors_created_total = Counter("donors_created_total", "Donors created", ["service", "source"])
lost_create_races_total = Counter(
    "lost_create_races_total",
    "Inserts that lost a uniqueness race and re-read the winner",
    ["service", "entity"],
)
trail_entries_total = Counter("trail_entries_total", "Transaction trail entries appended", ["service", "entry_type"])
pool_rejections_total = Counter(
    "pool_rejections_total",
    "Units of work rejected because the connection queue was full",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
