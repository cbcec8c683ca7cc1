from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class SidecarMetrics:
    """Prometheus metrics exported by the sidecar on ``/metrics``."""

    files_written_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_files_written_total",
            "Total files written into the target directory",
        )
    )
    files_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_files_deleted_total",
            "Total files removed from the target directory",
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_sync_errors_total",
            "Total synchronization cycles that failed part-way",
        )
    )
    managed_files: Gauge = field(
        default_factory=lambda: Gauge(
            "cm_bump_managed_files",
            "Files currently materialized in the target directory",
        )
    )
    tracked_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "cm_bump_tracked_configmaps",
            "ConfigMaps currently matching the namespace and label selector",
        )
    )
    signals_sent_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_signals_sent_total",
            "Total signals delivered to the target process",
            ["signal"],
        )
    )
    signal_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_signal_failures_total",
            "Total signal deliveries that failed after the target was resolved",
        )
    )
    target_missing_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_target_missing_total",
            "Total dispatches skipped because no matching process was running",
        )
    )
    debounced_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_debounced_total",
            "Total change triggers coalesced into an already pending signal",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_relists_total",
            "Total full re-lists after an expired resource version",
        )
    )
    controller_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "cm_bump_controller_restarts_total",
            "Total watch controller restarts after an unexpected crash",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cm_bump",
            "Build information for the sidecar",
        )
    )


METRICS = SidecarMetrics()
