from __future__ import annotations

import logging
import random
import threading
import time
from typing import Optional

import pytest

from fileage_exporter.metrics import ExporterMetrics, MetricKind
from fileage_exporter.state import ReadWriteLock, RunState, RunStateTracker
from fileage_exporter.timesource import ABSENT

S = 1_000_000_000
STARTUP = 1000 * S


def count(metrics: ExporterMetrics) -> float:
    return metrics.registry.get_sample_value("update_count_total")


def running(metrics: ExporterMetrics) -> Optional[float]:
    return metrics.registry.get_sample_value("update_running")


def durations(metrics: ExporterMetrics) -> Optional[float]:
    return metrics.registry.get_sample_value("update_duration_seconds_count")


def duration_sum(metrics: ExporterMetrics) -> Optional[float]:
    return metrics.registry.get_sample_value("update_duration_seconds_sum")


def test_initial_state(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    assert tracker.snapshot() == RunState()
    assert count(metrics) == 0.0
    assert metrics.registered == {MetricKind.COUNT}
    assert running(metrics) is None
    assert durations(metrics) is None


def test_new_end_is_counted(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(ABSENT, STARTUP + 5 * S)

    assert count(metrics) == 1.0
    assert tracker.snapshot() == RunState(start=ABSENT, end=STARTUP + 5 * S, previous_end=STARTUP + 5 * S)
    # No start file configured: neither running nor duration are published.
    assert running(metrics) is None
    assert durations(metrics) is None


def test_same_end_twice_is_debounced(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 1 * S, STARTUP + 5 * S)
    tracker.observe(STARTUP + 1 * S, STARTUP + 5 * S)

    assert count(metrics) == 1.0
    assert durations(metrics) == 1.0


def test_every_distinct_end_is_counted(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(ABSENT, STARTUP + 5 * S)
    tracker.observe(ABSENT, STARTUP + 6 * S)
    tracker.observe(ABSENT, STARTUP + 6 * S)
    tracker.observe(ABSENT, STARTUP + 7 * S)

    assert count(metrics) == 3.0


def test_end_before_startup_is_not_counted(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(ABSENT, STARTUP - 1 * S)

    assert count(metrics) == 0.0
    assert tracker.snapshot().end == STARTUP - 1 * S
    assert tracker.snapshot().previous_end == STARTUP - 1 * S


def test_end_equal_to_startup_is_counted(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(ABSENT, STARTUP)
    assert count(metrics) == 1.0


def test_start_without_end_is_running(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 1 * S, ABSENT)

    assert MetricKind.RUNNING in metrics.registered
    assert running(metrics) == 1.0
    assert count(metrics) == 0.0


def test_end_absent_never_sets_running_without_start(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(ABSENT, ABSENT)

    assert running(metrics) is None
    assert MetricKind.RUNNING not in metrics.registered


def test_completed_run_records_duration(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 1 * S, ABSENT)
    tracker.observe(STARTUP + 1 * S, STARTUP + 5 * S + S // 2)

    assert running(metrics) == 0.0
    assert count(metrics) == 1.0
    assert durations(metrics) == 1.0
    assert duration_sum(metrics) == pytest.approx(4.5)


def test_exposition_has_no_created_series(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 1 * S, STARTUP + 2 * S)

    text = metrics.render().decode("utf-8")
    assert "update_duration_seconds_count 1.0" in text
    assert "_created" not in text


def test_start_after_end_is_running_and_not_counted(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 5 * S, STARTUP + 2 * S)

    assert running(metrics) == 1.0
    assert count(metrics) == 0.0
    assert durations(metrics) is None
    # The end value is still consumed so it is never reconsidered.
    assert tracker.snapshot().previous_end == STARTUP + 2 * S


def test_rejected_end_is_not_reconsidered(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 5 * S, STARTUP + 2 * S)
    tracker.observe(STARTUP + 1 * S, STARTUP + 2 * S)

    assert count(metrics) == 0.0
    assert running(metrics) == 0.0


def test_equal_start_and_end_is_completed(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 2 * S, STARTUP + 2 * S)

    assert running(metrics) == 0.0
    assert count(metrics) == 1.0
    assert duration_sum(metrics) == 0.0


def test_new_run_after_completed_run(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(STARTUP + 1 * S, STARTUP + 3 * S)
    tracker.observe(STARTUP + 10 * S, STARTUP + 3 * S)
    assert running(metrics) == 1.0

    tracker.observe(STARTUP + 10 * S, STARTUP + 12 * S)
    assert running(metrics) == 0.0
    assert count(metrics) == 2.0
    assert duration_sum(metrics) == pytest.approx(4.0)


def test_end_file_removed_keeps_previous_end(tracker: RunStateTracker, metrics: ExporterMetrics) -> None:
    tracker.observe(ABSENT, STARTUP + 3 * S)
    tracker.observe(ABSENT, ABSENT)
    assert tracker.snapshot().end is ABSENT
    assert tracker.snapshot().previous_end == STARTUP + 3 * S

    # Recreated with the same mtime (e.g. restored): still the same run.
    tracker.observe(ABSENT, STARTUP + 3 * S)
    assert count(metrics) == 1.0


def test_run_started_logged_per_event(tracker: RunStateTracker, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="fileage_exporter.state"):
        tracker.observe(STARTUP + 1 * S, ABSENT)
        tracker.observe(STARTUP + 1 * S, ABSENT)

    started = [r for r in caplog.records if r.getMessage() == "An update run started."]
    assert len(started) == 2


def test_random_sequences_keep_counter_invariants() -> None:
    rng = random.Random(4242)
    for _ in range(50):
        metrics = ExporterMetrics()
        tracker = RunStateTracker(metrics, startup=STARTUP)
        previous = count(metrics)
        for _ in range(40):
            start = rng.choice([ABSENT, STARTUP + rng.randint(-5, 20) * S])
            end = rng.choice([ABSENT, STARTUP + rng.randint(-5, 20) * S])
            tracker.observe(start, end)

            current = count(metrics)
            assert previous <= current <= previous + 1
            previous = current

            sum_ = duration_sum(metrics)
            if sum_ is not None:
                assert sum_ >= 0.0


class TestReadWriteLock:
    def test_readers_share(self) -> None:
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def reader() -> None:
            with lock.read_locked():
                acquired.set()

        t = threading.Thread(target=reader)
        t.start()
        assert acquired.wait(2.0)
        t.join(2.0)
        lock.release_read()

    def test_writer_excludes_readers(self) -> None:
        lock = ReadWriteLock()
        lock.acquire_write()
        acquired = threading.Event()

        def reader() -> None:
            with lock.read_locked():
                acquired.set()

        t = threading.Thread(target=reader)
        t.start()
        assert not acquired.wait(0.2)
        lock.release_write()
        assert acquired.wait(2.0)
        t.join(2.0)

    def test_writer_waits_for_readers(self) -> None:
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def writer() -> None:
            with lock.write_locked():
                acquired.set()

        t = threading.Thread(target=writer)
        t.start()
        assert not acquired.wait(0.2)
        lock.release_read()
        assert acquired.wait(2.0)
        t.join(2.0)

    def test_readers_never_see_partial_update(self, tracker: RunStateTracker) -> None:
        stop = threading.Event()
        torn = []

        def writer() -> None:
            n = 1
            while not stop.is_set():
                tracker.observe(STARTUP + n * S, STARTUP + n * S)
                n += 1
                time.sleep(0.001)

        t = threading.Thread(target=writer)
        t.start()
        deadline = time.monotonic() + 0.3
        while time.monotonic() < deadline:
            snap = tracker.snapshot()
            if snap.start != snap.end:
                torn.append(snap)
        stop.set()
        t.join(2.0)

        assert torn == []
