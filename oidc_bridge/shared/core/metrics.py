"""
Shared Prometheus Metrics for the bridge, publisher and fleet aggregator.
"""
from prometheus_client import Counter, Gauge, Histogram

# Upstream polls by outcome (committed, unchanged, fetch_error, conflict, issuer_mismatch, cache_error)
BRIDGE_POLLS = Counter(
    "oidc_bridge_polls_total",
    "Total number of upstream polls",
    ["outcome"]
)

# Emitted once per committed rotation transition
ROTATIONS_DETECTED = Counter(
    "oidc_bridge_rotations_detected_total",
    "Key rotation transitions committed to the shared cache",
    ["target"]
)

SNAPSHOT_GENERATION = Gauge(
    "oidc_bridge_snapshot_generation",
    "Generation of the last snapshot committed or observed",
    ["target"]
)

PUBLISHED_KEYS = Gauge(
    "oidc_bridge_published_keys",
    "Number of keys in the last successfully published JWKS",
    ["document"]
)

# Publish attempts per object (committed, unchanged, precondition_failed, failed, permission_denied)
PUBLISH_RESULTS = Counter(
    "oidc_bridge_publish_results_total",
    "Outcome of conditional writes to object storage",
    ["document", "outcome"]
)

STORAGE_RETRIES = Counter(
    "oidc_bridge_storage_retries_total",
    "Transient storage failures that were retried",
    ["operation"]
)

FLEET_CLUSTERS = Gauge(
    "oidc_bridge_fleet_clusters",
    "Clusters seen by the last fleet aggregation",
    ["state"]
)

IS_LEADER = Gauge(
    "oidc_bridge_is_leader",
    "1 when this instance holds the leader lease"
)

CYCLE_DURATION = Histogram(
    "oidc_bridge_cycle_duration_seconds",
    "Duration of bridge, publish and aggregation cycles in seconds",
    ["job_name"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60]
)
