"""Prometheus metrics exposed by the volume autoscaler."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Reconcile metrics
reconcile_duration_seconds = Histogram(
    "volume_autoscaler_reconcile_duration_seconds",
    "Duration of reconcile loops in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

reconcile_total = Counter(
    "volume_autoscaler_reconcile_total",
    "Total reconcile cycles by outcome",
    ["outcome"],
)

# Volume metrics
pvc_usage_percent = Gauge(
    "volume_autoscaler_pvc_usage_percent",
    "Current usage percentage of managed PVCs",
    ["namespace", "pvc", "volumeautoscaler"],
)

scale_events_total = Counter(
    "volume_autoscaler_scale_events_total",
    "Total number of PVC expansion events",
    ["namespace", "pvc", "volumeautoscaler"],
)

poll_errors_total = Counter(
    "volume_autoscaler_poll_errors_total",
    "Total number of poll errors",
    ["namespace", "volumeautoscaler", "reason"],
)

safety_blocks_total = Counter(
    "volume_autoscaler_safety_blocks_total",
    "Total expansions blocked by a safety check",
    ["reason"],
)

# Prometheus backend metrics
prometheus_query_duration_seconds = Histogram(
    "volume_autoscaler_prometheus_query_duration_seconds",
    "Prometheus instant query duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

prometheus_clients = Gauge(
    "volume_autoscaler_prometheus_clients",
    "Number of cached Prometheus clients",
)

# Work queue metrics
queue_depth = Gauge(
    "volume_autoscaler_queue_depth",
    "Number of policy keys ready to be reconciled",
)

queue_scheduled = Gauge(
    "volume_autoscaler_queue_scheduled",
    "Number of policy keys waiting for their next wake time",
)

# Watcher metrics
watcher_events_total = Counter(
    "volume_autoscaler_watcher_events_total",
    "Total watch events received by type",
    ["watcher", "event_type"],
)

watcher_reconnects_total = Counter(
    "volume_autoscaler_watcher_reconnects_total",
    "Total watcher reconnection attempts",
    ["watcher", "reason"],
)

watcher_errors_total = Counter(
    "volume_autoscaler_watcher_errors_total",
    "Total watcher errors",
    ["watcher", "status_code"],
)

watcher_backoff_seconds = Histogram(
    "volume_autoscaler_watcher_backoff_seconds",
    "Watcher backoff duration in seconds",
    ["watcher"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)
