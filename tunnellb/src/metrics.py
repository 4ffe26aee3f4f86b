from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes carry a ``result`` label (``success``, ``error``,
    ``invalid_key``) so operators can alert on the error ratio without
    parsing logs.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_reconcile_total",
            "Total Service reconciliations by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "tunnellb_reconcile_duration_seconds",
            "Seconds spent reconciling a single Service",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_retries_total",
            "Total Service keys requeued with backoff after a failed reconciliation",
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_dropped_total",
            "Total Service keys dropped after exhausting retries",
        )
    )
    tracked_services: Gauge = field(
        default_factory=lambda: Gauge(
            "tunnellb_tracked_services",
            "Current number of Services with an assigned tunnel hostname",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "tunnellb_queue_depth",
            "Current number of keys waiting in the reconcile queue",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_queue_adds_total",
            "Total keys accepted by the reconcile queue",
        )
    )
    config_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_config_writes_total",
            "Total cloudflared configuration files replaced on disk",
        )
    )
    config_write_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_config_write_errors_total",
            "Total failed cloudflared configuration writes",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_watch_errors_total",
            "Total Kubernetes Service watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    daemon_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "tunnellb_daemon_restarts_total",
            "Total cloudflared process restarts after an unexpected exit",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "tunnellb",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
