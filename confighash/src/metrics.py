from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "config_hash_reconcile_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "config_hash_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    workload_patches_total: Counter = field(
        default_factory=lambda: Counter(
            "config_hash_workload_patches_total",
            "Total pod template annotation patches issued",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "config_hash_queue_depth",
            "Reconcile requests waiting in the work queue, including delayed retries",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "config_hash_retry_total",
            "Total reconcile requests re-queued after a failed pass",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_hash_watch_errors_total",
            "Total Kubernetes watch errors",
            ["source"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "config_hash_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["source"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "config_hash_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "config_hash_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "config_hash_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
