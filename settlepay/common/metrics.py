"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment intake requests", ["service"])
payments_created_total = Counter("payments_created_total", "Payments created", ["service", "currency"])
duplicates_rejected_total = Counter(
    "duplicates_rejected_total",
    "Intake requests rejected for reusing an idempotency key",
    ["service"],
)
payment_success_total = Counter("payment_success_total", "Payments settled successfully", ["service"])
payment_failure_total = Counter(
    "payment_failure_total",
    "Payments that reached terminal FAILED",
    ["service", "reason_code"],
)
payment_latency_seconds = Histogram("payment_latency_seconds", "Intake request latency seconds", ["service"])
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
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment end-to-end duration seconds from PENDING to terminal",
    ["service", "terminal_state"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Settlement provider call duration seconds",
    ["service", "outcome"],
)
retries_total = Counter("retries_total", "Retryable provider failures re-queued", ["service", "dependency"])
orphans_reclaimed_total = Counter(
    "orphans_reclaimed_total",
    "PROCESSING payments reclaimed to PENDING by the staleness sweep",
    ["service"],
)
rate_limit_denied_total = Counter(
    "rate_limit_denied_total",
    "Provider calls deferred because the rate limiter denied a permit",
    ["service", "path"],
)
claim_conflicts_total = Counter(
    "claim_conflicts_total",
    "Conditional status updates that lost a race",
    ["service", "transition"],
)
dispatch_cycle_seconds = Histogram("dispatch_cycle_seconds", "Dispatcher cycle duration seconds", ["service"])
pending_payments_total = Gauge(
    "pending_payments_total",
    "PENDING payments seen at the start of the last dispatch cycle",
    ["service"],
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
