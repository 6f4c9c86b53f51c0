"""Centralized Prometheus metrics for the smart HTTP service.

Metrics Categories:
- Sessions: decisions taken per service kind
- Subprocesses: running pack-protocol services and spawn failures
- Traffic: request bytes buffered before a decision
"""

from prometheus_client import Counter, Gauge


# ==============================================================================
# Session Metrics
# ==============================================================================

GIT_SESSIONS_TOTAL = Counter(
    "smarthttp_git_sessions_total",
    "Git service sessions by decision",
    ["service", "status"],  # status: accepted, rejected
)

GIT_REQUEST_BYTES = Counter(
    "smarthttp_git_request_bytes_total",
    "Decoded request body bytes buffered for git services",
    ["service"],
)


# ==============================================================================
# Subprocess Metrics
# ==============================================================================

GIT_ACTIVE_SERVICES = Gauge(
    "smarthttp_git_active_services",
    "Currently running pack-protocol subprocesses",
    ["service"],
)

GIT_SPAWN_FAILURES_TOTAL = Counter(
    "smarthttp_git_spawn_failures_total",
    "Pack-protocol subprocesses that failed to start",
    ["service"],
)


def record_decision(service: str, status: str) -> None:
    """Count an accept or reject decision."""
    GIT_SESSIONS_TOTAL.labels(service=service, status=status).inc()
