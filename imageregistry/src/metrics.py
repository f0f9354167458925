from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Sync outcomes are labelled with the error class (``success``,
    ``transient``, ``permanent``) so alerts can separate an invalid spec,
    which is never retried, from a flapping API server.
    """

    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_syncs_total",
            "Total sync passes by outcome",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "image_registry_operator_sync_duration_seconds",
            "Wall-clock duration of a single sync pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_status_updates_total",
            "Total ImageRegistry updates written by the operator",
            ["result"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_events_total",
            "Total watch events that enqueued a sync",
            ["kind", "type"],
        )
    )
    resyncs_filtered_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_resyncs_filtered_total",
            "Total update notifications dropped because resourceVersion was unchanged",
            ["kind"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "image_registry_operator_workqueue_depth",
            "Items currently pending in the work queue",
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_workqueue_adds_total",
            "Total items added to the work queue (including coalesced adds)",
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_workqueue_retries_total",
            "Total work items re-queued after a failed sync",
        )
    )
    informers_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "image_registry_operator_informers_synced",
            "Whether an informer has completed its initial list (1=yes, 0=no)",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "image_registry_operator_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "image_registry_operator_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "image_registry_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
