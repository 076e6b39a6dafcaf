"""Health and liveness evaluation from the end file's age."""

from __future__ import annotations

import logging
import time
from typing import Tuple

from fileage_exporter.state import RunStateTracker
from fileage_exporter.timesource import (
    ZERO_TIME,
    Timestamp,
    elapsed_seconds,
    format_timestamp,
    now_ns,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ReadinessEvaluator", "render_status_body"]

STATUS_BODY = (
    "last_update: {last_update}\r\n"
    "# time {zero} means never.\r\n"
    "# alive/healthy: {ok}\r\n"
)


def render_status_body(end: Timestamp, ok: bool) -> str:
    """Render the probe body.

    The raw end timestamp is always reported, with the zero time standing in
    for "never observed", so operators can tell a stale file from a missing one.
    """
    return STATUS_BODY.format(
        last_update=format_timestamp(end),
        zero=ZERO_TIME,
        ok="true" if ok else "false",
    )


class ReadinessEvaluator:
    """Compute probe results from the tracked end timestamp.

    Attributes:
        tracker (RunStateTracker): Source of the end timestamp.
        started_monotonic (float): ``time.monotonic()`` at exporter startup,
            used for the grace window.
    """

    def __init__(self, tracker: RunStateTracker, started_monotonic: float) -> None:
        self.tracker = tracker
        self.started_monotonic = started_monotonic

    def evaluate(self, timeout: float, grace: float) -> Tuple[bool, str]:
        """Evaluate one probe.

        ``ok`` is True if the end file is younger than ``timeout``. A positive
        ``grace`` forces ``ok`` while the exporter itself is younger than
        ``grace``, giving a fresh process time to observe a recent end file.
        Liveness passes ``grace=0``.

        Args:
            timeout (float): Maximum end file age in seconds.
            grace (float): Warm-up window in seconds, 0 to disable.

        Returns:
            Tuple[bool, str]: The verdict and the rendered body.
        """
        end = self.tracker.snapshot().end

        age = elapsed_seconds(now_ns(), end)
        ok = age < timeout
        if grace > 0 and time.monotonic() - self.started_monotonic < grace:
            ok = True

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Probe evaluated: age={age:.3f}s timeout={timeout}s grace={grace}s ok={ok}")
        return ok, render_status_body(end, ok)
