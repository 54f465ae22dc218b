"""Prometheus metrics for the API and the background sweeps."""

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

# Running under gunicorn with several workers
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "subscription_service_app",
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
PAYMENT_ORDERS_CREATED_TOTAL = Counter(
    "payment_orders_created_total",
    "Payment orders registered with the gateway",
    ["plan", "billing_cycle"],
    registry=REGISTRY,
)

ORDER_RESOLUTIONS_TOTAL = Counter(
    "order_resolutions_total",
    "Gateway outcomes applied to orders, by path and result",
    ["source", "outcome"],
    registry=REGISTRY,
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "webhook_deliveries_total",
    "Inbound gateway webhook deliveries",
    ["result"],
    registry=REGISTRY,
)

GATEWAY_REQUEST_DURATION_SECONDS = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ============================================
# Sweeper Metrics
# ============================================
SWEEP_ACTIONS_TOTAL = Counter(
    "sweep_actions_total",
    "Actions taken by the reconciliation sweeps",
    ["action"],
    registry=REGISTRY,
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "notification_failures_total",
    "Notifications that could not be delivered",
    ["kind"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Render all metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
