"""Prometheus metrics exported by the controller."""

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# RECONCILIATION
# ============================================================================

sync_duration = Histogram(
    "varmor_policy_sync_duration_seconds",
    "Time spent syncing a single policy key",
    ["scope"],
)

sync_results = Counter(
    "varmor_policy_sync_total",
    "Number of policy syncs by outcome",
    ["scope", "result"],
)

reconcile_errors = Counter(
    "varmor_reconcile_errors_total",
    "Policy keys dropped after exhausting their retries",
    ["scope"],
)

validation_rejections = Counter(
    "varmor_policy_rejections_total",
    "Policy changes rejected by the validation gate",
    ["scope", "operation"],
)

# ============================================================================
# WORK QUEUE
# ============================================================================

queue_depth = Gauge(
    "varmor_workqueue_depth", "Current depth of the work queue", ["name"]
)

queue_adds = Counter(
    "varmor_workqueue_adds_total", "Total number of adds to the work queue", ["name"]
)

queue_retries = Counter(
    "varmor_workqueue_retries_total",
    "Total number of rate limited re-adds to the work queue",
    ["name"],
)

# ============================================================================
# COLLABORATORS
# ============================================================================

status_messages = Counter(
    "varmor_status_messages_total",
    "Messages sent to the status manager mailbox",
    ["kind"],
)

workload_updates = Counter(
    "varmor_workload_updates_total",
    "Workload annotation updates by result",
    ["result"],
)
