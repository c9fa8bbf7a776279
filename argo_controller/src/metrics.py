from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile and queue series carry a ``controller`` label (``workflows`` or
    ``image-pull-secrets``) so both subcommands share one metric namespace.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_reconciles_total",
            "Total reconciliation runs by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "argo_controller_reconcile_duration_seconds",
            "Wall-clock duration of a single reconciliation run",
            ["controller"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    object_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_object_writes_total",
            "Total successful writes to derived objects",
            ["kind", "action"],
        )
    )
    object_write_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_object_write_errors_total",
            "Total failed writes to derived objects",
            ["kind", "action"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "argo_controller_queue_depth",
            "Current number of keys waiting in the work queue",
            ["controller"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_retries_total",
            "Total keys requeued with backoff after a failed reconciliation",
            ["controller"],
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_dropped_keys_total",
            "Total keys dropped after exhausting the retry ceiling",
            ["controller"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "argo_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "argo_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
