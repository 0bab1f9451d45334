"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_intents_total = Counter(
    "payment_intents_total",
    "Payment intents created or resumed, by execution path",
    ["service", "path"],
)
completion_claims_total = Counter(
    "completion_claims_total",
    "Completion claim attempts by source and outcome",
    ["service", "source", "outcome"],
)
failure_claims_total = Counter(
    "failure_claims_total",
    "Failure-path claim attempts by source, terminal status and outcome",
    ["service", "source", "terminal_status", "outcome"],
)
side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Best-effort post-completion effects that raised",
    ["service", "effect"],
)
completion_errors_total = Counter(
    "completion_errors_total",
    "Critical post-claim failures left for reconciliation",
    ["service", "source"],
)
poll_cycles_total = Counter("poll_cycles_total", "Reconciliation poll cycles", ["service", "result"])
poll_transactions_total = Counter(
    "poll_transactions_total",
    "Transactions examined by the poller, by classification",
    ["service", "classification"],
)
poll_cycle_duration_seconds = Histogram(
    "poll_cycle_duration_seconds",
    "Wall time of one reconciliation poll cycle",
    ["service"],
)
poll_in_progress = Gauge("poll_in_progress", "1 while a poll cycle is running", ["service"])
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Gateway HTTP calls by operation and result",
    ["service", "operation", "result"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Gateway HTTP call latency seconds",
    ["service", "operation"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
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
    "Seconds from transaction creation to terminal status",
    ["service", "terminal_state"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
