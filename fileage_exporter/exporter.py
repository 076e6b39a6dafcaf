"""Exporter façade tying the marker watchers to the run state.

Construction order:
    1. Validate the configuration and resolve both marker paths to absolute
       form (the :class:`Config` itself is never modified).
    2. :meth:`Exporter.start` attaches both directory watchers, which may
       block until the directories exist or the directory timeout expires.
    3. One synchronous :meth:`Exporter.update` before any traffic is served.
    4. The watch loop thread takes over and re-measures on every event
       concerning either marker.

Concurrency:
    - The watch loop is the only writer of the run state.
    - HTTP handler threads call :meth:`scrape`, :meth:`health` and
      :meth:`liveness`, which only take the shared lock (the age gauge's
      one-time registration aside).
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from typing import Optional, Tuple, Union

from fileage_exporter.config import Config
from fileage_exporter.metrics import ExporterMetrics, MetricKind
from fileage_exporter.readiness import ReadinessEvaluator
from fileage_exporter.state import RunStateTracker
from fileage_exporter.timesource import ABSENT, elapsed_seconds, measure, now_ns
from fileage_exporter.watcher import (
    EVENT_ERROR,
    DirectoryWatcher,
    DisabledWatcher,
    WatchEvent,
    attach,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Exporter"]

Watcher = Union[DirectoryWatcher, DisabledWatcher]


class Exporter:
    """Own the run state, metrics and watchers of one start/end file pair.

    Attributes:
        config (Config): The immutable configuration.
        start_file (str): Absolute path of the start file, "" if disabled.
        end_file (str): Absolute path of the end file.
        startup (int): Wall clock nanoseconds at construction.
        started_monotonic (float): ``time.monotonic()`` at construction.
        metrics (ExporterMetrics): Collectors in a private registry.
        tracker (RunStateTracker): Lock-guarded run state.
        readiness (ReadinessEvaluator): Probe evaluation.

    Example:
        >>> exporter = Exporter(load_config({"file_end": "/var/run/job/end"}))
        >>> exporter.start()
        >>> ok, body = exporter.health()
        >>> exporter.stop()
    """

    def __init__(self, config: Config) -> None:
        """Validate the configuration and build the in-memory state.

        Args:
            config (Config): Exporter configuration.

        Raises:
            ValueError: If no end file is configured.
        """
        if not config.file_end:
            raise ValueError("The end file must be set (--file-end).")

        self.config = config
        self.start_file = os.path.abspath(config.file_start) if config.file_start else ""
        self.end_file = os.path.abspath(config.file_end)

        self.startup = now_ns()
        self.started_monotonic = time.monotonic()

        self.metrics = ExporterMetrics(namespace=config.namespace, subsystem=config.subsystem)
        self.tracker = RunStateTracker(self.metrics, startup=self.startup)
        self.readiness = ReadinessEvaluator(self.tracker, self.started_monotonic)

        self._events: "queue.Queue[Optional[WatchEvent]]" = queue.Queue()
        self._start_watcher: Optional[Watcher] = None
        self._end_watcher: Optional[Watcher] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._stopping = False

    def start(self, stop_event: Optional[threading.Event] = None) -> None:
        """Attach the watchers, take the initial measurement and start the loop.

        Args:
            stop_event (Optional[threading.Event]): Set on shutdown; aborts
                waiting for a missing directory.

        Raises:
            DirectoryTimeoutError: If a marker directory did not appear
                within ``directory_timeout`` of startup.
            AttachCancelledError: If ``stop_event`` was set while waiting.
        """
        deadline = self.started_monotonic + self.config.directory_timeout
        self._start_watcher = attach("start", self.start_file, deadline, self._events, stop_event)
        self._end_watcher = attach("end", self.end_file, deadline, self._events, stop_event)

        self.update()

        self._loop_thread = threading.Thread(target=self._watch_loop, name="FileageWatchLoop", daemon=True)
        self._loop_thread.start()
        logger.info(f"Exporter started (start file: {self.start_file or '-'}, end file: {self.end_file})")

    def update(self) -> None:
        """Measure both markers and apply them to the run state.

        Measuring happens before the write lock is taken so slow storage
        never blocks readers.
        """
        start, end = measure(self.start_file), measure(self.end_file)
        self.tracker.observe(start, end)

    def handle_event(self, event: WatchEvent) -> None:
        """Apply one watcher event.

        Error events are logged and otherwise ignored. Change events trigger
        an update only if they concern the marker their watcher serves.
        """
        if event.kind == EVENT_ERROR:
            logger.warning(f"Error waiting for fs event on {event.source} file: {event.error}")
            return

        target = self._start_watcher if event.source == "start" else self._end_watcher
        if target is None or not target.enabled:
            return
        if event.concerns(target.basename):
            self.update()

    def _watch_loop(self) -> None:
        while True:
            event = self._events.get()
            if event is None:
                break
            try:
                self.handle_event(event)
            except Exception:
                logger.error("Unexpected error while handling fs event", exc_info=True)
        logger.debug("Watch loop stopped.")

    def refresh_age(self) -> None:
        """Set the age gauge from the current end timestamp.

        The gauge is registered the first time an end file has been seen.
        """
        end = self.tracker.snapshot().end
        if end is ABSENT:
            return
        if not self.metrics.is_registered(MetricKind.AGE):
            with self.tracker.lock.write_locked():
                self.metrics.register(MetricKind.AGE)
        self.metrics.update_age.set(elapsed_seconds(now_ns(), end))

    def scrape(self) -> bytes:
        """Return the metrics exposition, refreshing the age gauge first."""
        self.refresh_age()
        return self.metrics.render()

    def health(self) -> Tuple[bool, str]:
        """Evaluate the health probe, honouring the warm-up grace window."""
        return self.readiness.evaluate(self.config.health_timeout, self.config.health_grace)

    def liveness(self) -> Tuple[bool, str]:
        """Evaluate the liveness probe. No grace window applies."""
        return self.readiness.evaluate(self.config.liveness_timeout, 0)

    def stop(self) -> None:
        """Stop the watchers and the watch loop.

        Returns:
            None
        """
        if self._stopping:
            return
        self._stopping = True
        for watcher in (self._start_watcher, self._end_watcher):
            if watcher is not None:
                try:
                    watcher.stop()
                except Exception as e:
                    logger.error(f"Error stopping {watcher.source} watcher: {e}")
        self._events.put(None)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=5.0)
        logger.info("Exporter stopped.")

    def __repr__(self) -> str:
        return f"<Exporter start_file={self.start_file!r} end_file={self.end_file!r}>"
