"""Prometheus metrics for settlements, plan maturity, market gating and notifications"""

from prometheus_client import Counter, Histogram

# Settlement metrics
settlement_counter = Counter(
    "bullion_settlement_total",
    "Money movements recorded by the ledger",
    ["kind", "channel", "status"],  # status: SUCCESS | PENDING | FAILED
)

settlement_rejection_counter = Counter(
    "bullion_settlement_rejections_total",
    "Settlement requests rejected by a domain rule",
    ["code"],
)

market_rejection_counter = Counter(
    "bullion_market_rejections_total",
    "Money-moving requests rejected by the market window gate",
    ["reason"],  # MARKET_CLOSED_ADMIN | MARKET_CLOSED_TIME
)

offline_confirmation_counter = Counter(
    "bullion_offline_confirmations_total",
    "Offline payment confirmation attempts",
    ["outcome"],  # confirmed | <error code>
)

# Plan lifecycle metrics
maturity_bonus_counter = Counter(
    "bullion_maturity_bonus_total",
    "Maturity bonus applications",
    ["outcome"],  # processed | skipped | failed
)

plan_transition_counter = Counter(
    "bullion_plan_transitions_total",
    "Plan status transitions",
    ["to_status"],
)

# Notification metrics
notification_latency_histogram = Histogram(
    "notification_latency_seconds",
    "Notification webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification delivery attempts",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_settlement(kind: str, channel: str, status: str) -> None:
    """Record one recorded money movement"""
    settlement_counter.labels(kind=kind, channel=channel, status=status).inc()


def record_rejection(code: str) -> None:
    settlement_rejection_counter.labels(code=code).inc()
