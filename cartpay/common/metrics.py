"""Prometheus metric definitions shared across checkout processes."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


checkout_attempts_total = Counter("checkout_attempts_total", "Total checkout attempts", ["service"])
checkout_outcomes_total = Counter(
    "checkout_outcomes_total",
    "Checkout attempts by terminal state and error code",
    ["service", "state", "error_code"],
)
checkout_latency_seconds = Histogram(
    "checkout_latency_seconds",
    "Checkout attempt duration seconds from DRAFT to terminal",
    ["service", "payment_method"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Operations that failed after the retry budget or on a non-retryable error",
    ["service", "dependency", "error_type"],
)
payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Gateway confirmation results by status",
    ["service", "status"],
)
order_cancellations_total = Counter(
    "order_cancellations_total",
    "Best-effort pending order cancellations by result",
    ["service", "result"],
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Stored order status transitions",
    ["service", "from_status", "to_status"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
