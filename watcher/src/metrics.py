from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class WatcherMetrics:
    """Prometheus metrics exported by the settings mirror on ``/metrics``.

    Poll and change counters are labelled by watcher kind and change type so
    operators can tell a noisy prefix watch from a flapping single key.
    """

    polls_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_polls_total",
            "Total poll ticks executed by watchers",
            ["kind"],
        )
    )
    changes_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_changes_total",
            "Total change events emitted by watchers",
            ["change_type"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_retries_total",
            "Total retries of remote store calls after transient failures",
        )
    )
    retry_exhausted_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_retry_exhausted_total",
            "Total remote store calls abandoned after exhausting retries",
        )
    )
    fatal_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_fatal_errors_total",
            "Total non-retriable errors raised out of a watcher tick",
        )
    )
    reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_reloads_total",
            "Total settings map republications",
        )
    )
    reload_callback_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "settings_watch_reload_callback_errors_total",
            "Total exceptions raised by reload callbacks",
        )
    )
    active_watchers: Gauge = field(
        default_factory=lambda: Gauge(
            "settings_watch_active_watchers",
            "Current number of running watcher threads",
        )
    )
    last_reload_timestamp: Gauge = field(
        default_factory=lambda: Gauge(
            "settings_watch_last_reload_timestamp_seconds",
            "Unix timestamp of the last settings map republication",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "settings_watch",
            "Build information for the settings mirror",
        )
    )


METRICS = WatcherMetrics()
