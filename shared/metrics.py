"""Prometheus metrics for engine observability.

Counters and histograms for provider calls, cache decisions, member
outcomes and the background session refresher. Exposed via /metrics.
"""

from prometheus_client import Counter, Histogram, make_asgi_app

# Provider
provider_requests_total = Counter(
    "provider_requests_total",
    "Total requests made to the fitness provider",
    ["endpoint", "outcome"],  # outcome: ok, rejected, not_found, transient
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Duration of fitness provider calls",
    ["endpoint"],
)

# Aggregation
metric_cache_decisions_total = Counter(
    "metric_cache_decisions_total",
    "Per-member cache decisions by metric class",
    ["metric_class", "decision"],  # decision: reuse, refresh
)

member_refresh_outcomes_total = Counter(
    "member_refresh_outcomes_total",
    "Outcome of a member's processing unit within an aggregation pass",
    ["outcome"],  # cached, refreshed, partial, transient, secret_unusable, revoked, failed
)

members_revoked_total = Counter(
    "members_revoked_total",
    "Members removed from the store",
    ["reason"],
)

aggregation_duration_seconds = Histogram(
    "aggregation_duration_seconds",
    "Duration of a full aggregation pass",
)

# Background session refresher
session_refresh_ticks_total = Counter(
    "session_refresh_ticks_total",
    "Background session token refresh ticks",
    ["outcome"],  # ok, failed
)

# API
api_requests_total = Counter(
    "api_requests_total",
    "Total API requests",
    ["endpoint", "method", "status_code"],
)

api_response_duration_seconds = Histogram(
    "api_response_duration_seconds",
    "Duration of API responses",
    ["endpoint"],
)


def create_metrics_app():
    """Create ASGI app for /metrics endpoint."""
    return make_asgi_app()
