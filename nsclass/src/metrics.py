from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    The reconcile metrics are labelled by target namespace so a single
    misbehaving namespace or class can be picked out; they are a side channel
    and never influence reconcile control flow.
    """

    applied_resources_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_applied_resources_total",
            "Total number of resources applied by namespaceclass controller",
            ["namespace", "class", "kind"],
        )
    )
    pruned_resources_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_pruned_resources_total",
            "Total number of resources pruned by namespaceclass controller",
            ["namespace", "class", "kind"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_reconcile_errors_total",
            "Total reconcile errors",
            ["namespace", "phase"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "namespaceclass_reconcile_duration_seconds",
            "Duration of reconcile loops",
            ["namespace", "class"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "namespaceclass_workqueue_depth",
            "Keys currently waiting in a work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_workqueue_retries_total",
            "Total keys re-queued with backoff after a failed reconcile",
            ["queue"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "namespaceclass_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "namespaceclass_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "namespaceclass_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
