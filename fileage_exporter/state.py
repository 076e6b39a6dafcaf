"""Run-state tracking for the watched update process.

Responsibility:
    Own the authoritative start/end/previous-end triple and derive the run
    count, running flag and duration metrics from it.

Design:
    - **Snapshot first**: every observation overwrites ``start`` and ``end``
      so scrapes and probes always see the freshest mtimes.
    - **Conditional derivation**: the counter and the duration summary only
      move for a new, chronologically sane end timestamp. Directory watches
      report the same write several times; those repeats leave the end mtime
      unchanged and are ignored.
    - **Locking**: one writer at a time, any number of readers. Locks are
      held for in-memory field access only, never across filesystem I/O.

Key Invariants:
    - ``previous_end`` changes only when ``end`` is non-absent and differs from it.
    - The counter never decrements and moves by at most one per observation.
    - Negative durations never reach the summary.
    - An end timestamp older than the exporter's own startup is never counted.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Iterator

from fileage_exporter.metrics import ExporterMetrics, MetricKind
from fileage_exporter.timesource import ABSENT, Timestamp, elapsed_seconds, is_after

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ReadWriteLock", "RunState", "RunStateTracker"]


class ReadWriteLock:
    """Shared/exclusive lock with writer preference.

    New readers wait while a writer holds or waits for the lock, so a steady
    stream of probe requests cannot starve the watch loop.
    """

    __slots__ = ("_condition", "_readers", "_writer", "_writers_waiting")

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._condition:
            while self._writer or self._writers_waiting:
                self._condition.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._condition:
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    def acquire_write(self) -> None:
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._condition:
            self._writer = False
            self._condition.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()

    def __repr__(self) -> str:
        return f"<ReadWriteLock readers={self._readers} writer={self._writer}>"


@dataclass
class RunState:
    """Last observed marker mtimes.

    Attributes:
        start (Timestamp): mtime of the start file, ABSENT if unconfigured or missing.
        end (Timestamp): mtime of the end file.
        previous_end (Timestamp): ``end`` as of the last recognized new run end.
    """

    start: Timestamp = ABSENT
    end: Timestamp = ABSENT
    previous_end: Timestamp = ABSENT


class RunStateTracker:
    """Apply marker observations to the run state and its metrics.

    Attributes:
        metrics (ExporterMetrics): Collectors updated by :meth:`observe`.
        startup (int): Wall clock nanoseconds at exporter startup. End
            timestamps before it belong to an earlier incarnation.
        lock (ReadWriteLock): Guards ``_state`` and ``metrics.registered``.

    Example:
        >>> tracker = RunStateTracker(ExporterMetrics(), startup=0)
        >>> tracker.observe(ABSENT, 5_000_000_000)
        >>> tracker.snapshot().end
        5000000000
    """

    def __init__(self, metrics: ExporterMetrics, startup: int) -> None:
        self.metrics = metrics
        self.startup = startup
        self.lock = ReadWriteLock()
        self._state = RunState()

    def observe(self, start: Timestamp, end: Timestamp) -> None:
        """Record freshly measured marker mtimes.

        Called once at startup and once per relevant filesystem event. The
        caller measures both files before calling so no I/O happens under
        the write lock.

        Args:
            start (Timestamp): Current mtime of the start file.
            end (Timestamp): Current mtime of the end file.

        Returns:
            None
        """
        with self.lock.write_locked():
            self._state.start = start
            self._state.end = end

            if start is not ABSENT:
                self.metrics.register(MetricKind.RUNNING)
                if end is ABSENT or is_after(start, end):
                    # Fires on every qualifying event, not only on the transition.
                    logger.info("An update run started.")
                    self.metrics.update_running.set(1)
                else:
                    self.metrics.update_running.set(0)

            if end is ABSENT or end == self._state.previous_end:
                return
            self._state.previous_end = end

            if is_after(start, end):
                logger.debug("Ignoring end file older than start file.")
                return
            if is_after(self.startup, end):
                logger.debug("Ignoring end file older than exporter startup.")
                return

            logger.info("An update run ended.")
            self.metrics.update_count.inc()
            if start is not ABSENT:
                self.metrics.register(MetricKind.DURATION)
                self.metrics.update_duration.observe(elapsed_seconds(end, start))

    def snapshot(self) -> RunState:
        """Return a copy of the run state taken under the shared lock."""
        with self.lock.read_locked():
            return replace(self._state)

    def __repr__(self) -> str:
        return f"<RunStateTracker startup={self.startup}>"
