from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``name`` label so several queues in one process
    (tests, or a future second controller) do not collide.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_reconciles_total",
            "Total Service reconciliations by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingress_manager_reconcile_duration_seconds",
            "Seconds spent in a single Service reconciliation",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    ingress_mutations_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_ingress_mutations_total",
            "Total Ingress create/delete calls issued",
            ["action"],
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_requeues_total",
            "Total keys requeued with backoff after a failed reconciliation",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_dropped_keys_total",
            "Total keys dropped after exhausting their retry budget",
        )
    )
    unhandled_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_unhandled_errors_total",
            "Total errors reported to the process-wide error handler",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "ingress_manager_queue_depth",
            "Current number of keys waiting in the work queue",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_queue_adds_total",
            "Total keys added to the work queue",
            ["name"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_manager_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ingress_manager",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
