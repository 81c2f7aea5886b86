"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


reconciliation_events_total = Counter(
    "reconciliation_events_total",
    "Provider events handled by the reconciliation core",
    ["service", "source", "provider", "outcome"],
)
reconciliation_latency_seconds = Histogram(
    "reconciliation_latency_seconds",
    "Time spent applying one provider event",
    ["service", "source"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Provider events that did not change payment state",
    ["service", "provider"],
)
orphan_events_total = Counter(
    "orphan_events_total",
    "Provider events that could not be matched to a payment",
    ["service", "provider", "reason"],
)
status_default_applied_total = Counter(
    "status_default_applied_total",
    "Unrecognized provider statuses resolved through the configured default",
    ["service", "provider", "default"],
)
transition_conflicts_total = Counter(
    "transition_conflicts_total",
    "Conditional payment updates that lost a concurrent race",
    ["service"],
)
provider_verify_fallback_total = Counter(
    "provider_verify_fallback_total",
    "Verification calls answered by the success fallback",
    ["service", "provider", "reason"],
)
notifications_total = Counter(
    "notifications_total",
    "Notification delivery attempts",
    ["service", "kind", "result"],
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
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
