"""Prometheus metrics for the deployment orchestrator.

Usage::

    from machina.observability.metrics import DEPLOYMENT_TRANSITIONS_TOTAL

    DEPLOYMENT_TRANSITIONS_TOTAL.labels(
        type="reboot", state="completed", error_code="",
    ).inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# Use the default global registry so prometheus_client's built-in
# process/platform collectors are included alongside application metrics.

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "machina_http_requests_total",
    "Total HTTP requests by method, route template, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Deployment metrics
# ---------------------------------------------------------------------------

DEPLOYMENT_TRANSITIONS_TOTAL = Counter(
    "machina_deployment_transitions_total",
    "Deployment state transitions.",
    labelnames=["type", "state", "error_code"],
    registry=REGISTRY,
)

DEPLOYMENT_APPLY_ATTEMPTS_TOTAL = Counter(
    "machina_deployment_apply_attempts_total",
    "Apply attempts by deployment type and outcome.",
    labelnames=["type", "outcome"],
    registry=REGISTRY,
)

DEPLOYMENT_DURATION_SECONDS = Histogram(
    "machina_deployment_duration_seconds",
    "Wall time from validation start to terminal state.",
    labelnames=["type", "state"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
    registry=REGISTRY,
)

DEPLOYMENTS_IN_FLIGHT = Gauge(
    "machina_deployments_in_flight",
    "Deployments holding a worker slot (planning or applying).",
    registry=REGISTRY,
)

MACHINE_LOCK_QUEUE_DEPTH = Gauge(
    "machina_machine_lock_queue_depth",
    "Deployments waiting for a machine lock, across all machines.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Reconciler metrics
# ---------------------------------------------------------------------------

RECONCILE_TOTAL = Counter(
    "machina_reconcile_total",
    "Machine reconcile attempts by provider and outcome.",
    labelnames=["provider", "outcome"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Audit event metrics
# ---------------------------------------------------------------------------

AUDIT_EVENTS_EMITTED = Counter(
    "machina_audit_events_total",
    "Audit events emitted by action type.",
    labelnames=["action"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
