"""Prometheus metrics for the DropDeck lifecycle engine.

Defines operational metrics for monitoring the expiry sweep. Stuck or
failing groups show up as a growing failed/blocked pipeline count.
"""

from prometheus_client import Counter, Histogram, Gauge

# Sweep-once cycles
sweeps_total = Counter(
    "dropdeck_sweeps_total",
    "Total sweep-once invocations",
    ["trigger", "outcome"]  # trigger: interval|safety_net|manual, outcome: completed|skipped|error
)

sweep_duration_seconds = Histogram(
    "dropdeck_sweep_duration_seconds",
    "Wall time of one sweep-once cycle in seconds",
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0]
)

# Per-group pipelines
group_pipelines_total = Counter(
    "dropdeck_group_pipelines_total",
    "Per-group pipeline runs by result",
    ["result"]  # result: purged|export_failed|erase_blocked|failed|skipped|error
)

groups_in_sweep = Gauge(
    "dropdeck_groups_in_sweep",
    "Groups currently being processed by this process"
)

# Stage details
files_erased_total = Counter(
    "dropdeck_files_erased_total",
    "Attachment files securely erased"
)

notifications_total = Counter(
    "dropdeck_notifications_total",
    "Export notification attempts",
    ["status"]  # status: sent|failed
)

export_archive_bytes = Histogram(
    "dropdeck_export_archive_bytes",
    "Size of export archives in bytes",
    buckets=[1e3, 1e4, 1e5, 1e6, 1e7, 1e8, 1e9]
)
