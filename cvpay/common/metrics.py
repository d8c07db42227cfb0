"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


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
payment_initiations_total = Counter(
    "payment_initiations_total", "Payment initiation attempts by result", ["service", "result"]
)
push_requests_total = Counter("push_requests_total", "USSD push requests by gateway result", ["service", "result"])
webhooks_received_total = Counter("webhooks_received_total", "Gateway callbacks by outcome", ["service", "outcome"])
signature_rejected_total = Counter("signature_rejected_total", "Callbacks rejected for bad signature", ["service"])
payment_success_total = Counter("payment_success_total", "Payments moved to completed", ["service", "source"])
payment_failure_total = Counter("payment_failure_total", "Payments moved to failed", ["service", "source"])
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Seconds from payment creation to terminal state",
    ["service", "terminal_state"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Outcomes ignored because the payment was already terminal",
    ["service", "source"],
)
payment_anomalies_total = Counter(
    "payment_anomalies_total",
    "Late outcomes contradicting an already terminal payment",
    ["service", "kind"],
)
unknown_orders_total = Counter("unknown_orders_total", "Outcomes for order ids with no payment", ["service", "source"])
gateway_requests_total = Counter(
    "gateway_requests_total", "Outbound gateway calls by operation and result", ["operation", "result"]
)
gateway_latency_seconds = Histogram("gateway_latency_seconds", "Outbound gateway call latency", ["operation"])
affiliate_conversions_total = Counter("affiliate_conversions_total", "Referral conversions recorded", ["service"])
affiliate_conversion_failures_total = Counter(
    "affiliate_conversion_failures_total", "Referral conversion side effects that failed", ["service"]
)
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the rate limiter", ["service", "route"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
