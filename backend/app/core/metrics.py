"""Prometheus metrics for the billing service.

All collectors live in a dedicated registry exposed on ``GET /metrics``.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# gunicorn multiprocess mode
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "billing_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
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

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Billing Metrics
# ============================================
WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Inbound gateway notifications by outcome",
    ["gateway", "outcome"],
    registry=REGISTRY,
)

PLAN_CHANGES_TOTAL = Counter(
    "billing_plan_changes_total",
    "Plan change attempts by direction and outcome",
    ["direction", "outcome"],
    registry=REGISTRY,
)

WALLET_CREDITS_TOTAL = Counter(
    "billing_wallet_credits_total",
    "Wallet ledger entries appended, by reason",
    ["reason"],
    registry=REGISTRY,
)


# ============================================
# Payment Gateway Metrics
# ============================================
GATEWAY_REQUESTS_TOTAL = Counter(
    "billing_gateway_requests_total",
    "Outbound payment gateway calls",
    ["gateway", "operation", "status"],
    registry=REGISTRY,
)

GATEWAY_REQUEST_DURATION_SECONDS = Histogram(
    "billing_gateway_request_duration_seconds",
    "Payment gateway call latency in seconds",
    ["gateway", "operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Publish version and environment as an info metric.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
