from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Per-kind labels let operators alert on rollout and error rates for
    Deployments, StatefulSets and DaemonSets independently.
    """

    cycles_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_autorollout_cycles_total",
            "Total reconciliation cycles by outcome",
            ["outcome"],
        )
    )
    cycle_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kube_autorollout_cycle_duration_seconds",
            "Seconds spent in one reconciliation cycle",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120, float("inf")),
        )
    )
    workloads_scanned_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_autorollout_workloads_scanned_total",
            "Total labelled workloads listed per kind",
            ["kind"],
        )
    )
    rollouts_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_autorollout_rollouts_total",
            "Total rollout annotation patches issued after a digest change",
            ["kind"],
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_autorollout_errors_total",
            "Total reconciliation errors by kind and failing stage",
            ["kind", "stage"],
        )
    )
    registry_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_autorollout_registry_requests_total",
            "Total registry HTTP requests by fetch tier and response status",
            ["tier", "status"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kube_autorollout_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
