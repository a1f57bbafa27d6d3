"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

# Admission metrics
admission_requests = Counter(
    "ballotgate_admission_requests_total",
    "Total admission attempts",
    ["outcome"],
)

admission_duration = Histogram(
    "ballotgate_admission_duration_seconds",
    "Admission request duration",
)

partition_write_retries = Counter(
    "ballotgate_partition_write_retries_total",
    "Conditional writes retried after a transient partition error",
    ["partition_id"],
)

stale_route_retries = Counter(
    "ballotgate_stale_route_retries_total",
    "Routes recomputed after a topology change",
)

# Token metrics
tokens_issued = Counter(
    "ballotgate_tokens_issued_total",
    "Ballot tokens issued",
)

# Audit metrics
audit_degraded = Gauge(
    "ballotgate_audit_degraded",
    "1 while the audit ledger cannot persist events",
)

audit_spool_size = Gauge(
    "ballotgate_audit_spool_events",
    "Audit events waiting for redelivery",
)

audit_events_dropped = Counter(
    "ballotgate_audit_events_dropped_total",
    "Audit events dropped because the spool was full",
)

# Topology metrics
topology_version = Gauge(
    "ballotgate_topology_version",
    "Current shard topology version",
)

rebalances = Counter(
    "ballotgate_rebalances_total",
    "Shard rebalances by result",
    ["result"],
)
