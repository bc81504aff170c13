from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


DECISIONS_TOTAL = Counter(
    "ffb_guard_decisions_total",
    "Enforcement decisions computed by the budget guard",
    ["action", "mode", "status"],
)

SNAPSHOT_READ_DURATION_SECONDS = Histogram(
    "ffb_snapshot_read_duration_seconds",
    "Budget snapshot read duration in seconds",
    ["backend"],
    buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0),
)

SNAPSHOT_READ_FAILURES_TOTAL = Counter(
    "ffb_snapshot_read_failures_total",
    "Budget snapshot reads that failed",
    ["backend", "error"],
)

BUDGET_ALERTS_TOTAL = Counter(
    "ffb_budget_alerts_total",
    "Budget alerts emitted",
    ["kind", "severity"],
)

COST_RECORDED_USD_TOTAL = Counter(
    "ffb_cost_recorded_usd_total",
    "AI operation cost recorded in USD",
    ["operation_type"],
)

SPEND_CACHE_HITS_TOTAL = Counter(
    "ffb_spend_cache_hits_total",
    "Monthly spend reads served by the Redis counter",
)

SPEND_CACHE_MISS_TOTAL = Counter(
    "ffb_spend_cache_miss_total",
    "Monthly spend reads that fell back to the store",
)

RATE_LIMIT_HITS_TOTAL = Counter(
    "ffb_rate_limit_hits_total",
    "Total rate limit violations",
)

WATCHED_PROJECTS = Gauge(
    "ffb_watched_projects",
    "Projects with a scheduled budget refresh",
)
