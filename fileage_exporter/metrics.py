"""Prometheus collectors exported for the watched update process.

Each exporter owns a private :class:`prometheus_client.CollectorRegistry`
instead of the process-wide default registry. Collectors are created up
front but only registered once they carry meaning: a running gauge for an
unconfigured start file would be a permanently zero series.
"""

from __future__ import annotations

import enum
import logging
from typing import Set

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, disable_created_metrics, generate_latest

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ExporterMetrics", "MetricKind"]

# Only the series listed on MetricKind are exported; no *_created timestamps.
disable_created_metrics()


class MetricKind(enum.Enum):
    """Identify the lazily registered collectors."""

    COUNT = "update_count"
    AGE = "update_age_seconds"
    RUNNING = "update_running"
    DURATION = "update_duration_seconds"


class ExporterMetrics:
    """Hold the update collectors and track which are registered.

    ``register`` is not synchronized on its own. Callers hold the run-state
    write lock, which also guards the ``registered`` set.

    Attributes:
        registry (CollectorRegistry): Registry rendered on scrape.
        update_count (Counter): Completed update runs.
        update_age (Gauge): Seconds since the last update finished.
        update_running (Gauge): 1 while the monitored process seems to run.
        update_duration (Summary): Duration of completed runs in seconds.
        registered (Set[MetricKind]): Collectors already in the registry.
    """

    def __init__(self, namespace: str = "", subsystem: str = "") -> None:
        self.registry = CollectorRegistry(auto_describe=True)
        self.registered: Set[MetricKind] = set()

        # registry=None keeps the collectors out of the global REGISTRY.
        self.update_count = Counter(
            "update_count",
            "Counter of update runs.",
            namespace=namespace,
            subsystem=subsystem,
            registry=None,
        )
        self.update_age = Gauge(
            "update_age_seconds",
            "Time since last time an update finished.",
            namespace=namespace,
            subsystem=subsystem,
            registry=None,
        )
        self.update_running = Gauge(
            "update_running",
            "If the monitored process seems to run: 0 no; 1 yes.",
            namespace=namespace,
            subsystem=subsystem,
            registry=None,
        )
        self.update_duration = Summary(
            "update_duration_seconds",
            "Duration of update runs in seconds.",
            namespace=namespace,
            subsystem=subsystem,
            registry=None,
        )

        self.register(MetricKind.COUNT)

    def _collector(self, kind: MetricKind):
        return {
            MetricKind.COUNT: self.update_count,
            MetricKind.AGE: self.update_age,
            MetricKind.RUNNING: self.update_running,
            MetricKind.DURATION: self.update_duration,
        }[kind]

    def register(self, kind: MetricKind) -> bool:
        """Register the collector for ``kind`` unless already registered.

        Args:
            kind (MetricKind): Collector to publish.

        Returns:
            bool: True if this call registered it.
        """
        if kind in self.registered:
            return False
        self.registry.register(self._collector(kind))
        self.registered.add(kind)
        logger.debug(f"Registered metric {kind.value}")
        return True

    def is_registered(self, kind: MetricKind) -> bool:
        return kind in self.registered

    def render(self) -> bytes:
        """Return the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)
