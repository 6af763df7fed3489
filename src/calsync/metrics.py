"""Prometheus metrics for the calendar sync engine.

Metrics exported:
- calsync_sync_runs_total: Counter of orchestrator runs by terminal status
- calsync_sync_duration_seconds: Histogram of run wall time
- calsync_events_synced_total: Counter of mirror upserts
- calsync_events_deleted_total: Counter of mirror rows removed for cancellations
- calsync_appointments_pushed_total: Counter of appointment pushes by result
- calsync_token_refreshes_total: Counter of access-token refresh attempts by result

Tenant ids are deliberately not used as labels to keep cardinality bounded.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

sync_runs_total = Counter(
    "calsync_sync_runs_total",
    "Total number of calendar sync runs by terminal status",
    labelnames=["status"],
)

sync_duration_seconds = Histogram(
    "calsync_sync_duration_seconds",
    "Wall time of calendar sync runs in seconds",
    labelnames=["status"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

events_synced_total = Counter(
    "calsync_events_synced_total",
    "Total number of remote events upserted into the mirror",
)

events_deleted_total = Counter(
    "calsync_events_deleted_total",
    "Total number of mirror rows removed for cancelled remote events",
)

appointments_pushed_total = Counter(
    "calsync_appointments_pushed_total",
    "Total number of local appointments pushed to the remote calendar",
    labelnames=["result"],
)

token_refreshes_total = Counter(
    "calsync_token_refreshes_total",
    "Total number of access-token refresh attempts",
    labelnames=["result"],
)
