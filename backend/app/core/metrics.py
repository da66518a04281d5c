"""Prometheus metrics.

HTTP request metrics plus the billing core's own series: renewals, recurring
batches, token movements, refunds, webhooks and gateway errors. Everything
lives in a private registry exposed at ``/metrics``.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

REGISTRY = CollectorRegistry()

APP_INFO = Info("webtoon_studio_app", "Application information", registry=REGISTRY)


# HTTP

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

# Route is unknown until the request has been matched
HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method"],
    registry=REGISTRY,
)


# Billing

SUBSCRIPTION_RENEWALS_TOTAL = Counter(
    "subscription_renewals_total",
    "Subscription renewal attempts",
    ["plan", "result"],
    registry=REGISTRY,
)

RECURRING_BILLING_LAST_RUN = Gauge(
    "recurring_billing_last_run_timestamp_seconds",
    "Unix time of the last recurring billing batch",
    registry=REGISTRY,
)

RECURRING_BILLING_DURATION_SECONDS = Histogram(
    "recurring_billing_duration_seconds",
    "Wall time of one recurring billing batch",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
    registry=REGISTRY,
)

RECURRING_BILLING_DUE = Gauge(
    "recurring_billing_due_subscriptions",
    "Subscriptions found due at the start of the last batch",
    registry=REGISTRY,
)

TOKEN_DEBITS_TOTAL = Counter(
    "token_debits_total",
    "Token debit attempts",
    ["reason", "result"],
    registry=REGISTRY,
)

TOKENS_CREDITED_TOTAL = Counter(
    "tokens_credited_total",
    "Tokens added to balances, by reason",
    ["reason"],
    registry=REGISTRY,
)

GATEWAY_ERRORS_TOTAL = Counter(
    "payment_gateway_errors_total",
    "Payment gateway failures by internal error kind",
    ["operation", "kind"],
    registry=REGISTRY,
)

REFUNDS_TOTAL = Counter(
    "payment_refunds_total",
    "Refunds recorded against charges, by charge kind and source",
    ["kind", "source"],
    registry=REGISTRY,
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "payment_webhook_events_total",
    "Gateway webhook deliveries by event type and outcome",
    ["event_type", "result"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def get_metrics() -> tuple[bytes, str]:
    """Render the registry in Prometheus text format.

    Returns:
        Tuple of (payload, content type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
