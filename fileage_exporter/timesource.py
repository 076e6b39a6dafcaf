"""Modification-time measurement for the watched marker files.

Timestamps are integer nanoseconds since the Unix epoch. A missing or
unstatable file yields :data:`ABSENT`, which compares like the zero instant:
it is never after anything, and every real instant is after it.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "ABSENT",
    "ZERO_TIME",
    "Timestamp",
    "elapsed_seconds",
    "format_timestamp",
    "is_after",
    "measure",
    "now_ns",
]

Timestamp = Optional[int]

ABSENT: Timestamp = None

# Rendering of ABSENT, the "never" marker in probe bodies.
ZERO_TIME = "0001-01-01T00:00:00Z"

_NS_PER_SECOND = 1_000_000_000


def measure(path: str) -> Timestamp:
    """Return the mtime of ``path`` in nanoseconds, or ABSENT.

    An empty path means the feature is disabled. Stat failures of any kind
    are an expected steady state (the file has not been written yet) and are
    never raised.

    Args:
        path (str): Absolute path of the marker file, or "".

    Returns:
        Timestamp: ``st_mtime_ns`` of the file, or ABSENT.
    """
    if not path:
        return ABSENT
    try:
        return os.stat(path).st_mtime_ns
    except OSError as e:
        logger.debug(f"Could not stat {path}: {e}")
        return ABSENT


def now_ns() -> int:
    """Return the current wall clock time in nanoseconds."""
    return time.time_ns()


def is_after(a: Timestamp, b: Timestamp) -> bool:
    """Return True if ``a`` is chronologically after ``b``.

    ABSENT is treated as the zero instant.
    """
    if a is ABSENT:
        return False
    if b is ABSENT:
        return True
    return a > b


def elapsed_seconds(later: Timestamp, earlier: Timestamp) -> float:
    """Return ``later - earlier`` in seconds; infinite if ``earlier`` is ABSENT."""
    if earlier is ABSENT:
        return float("inf")
    if later is ABSENT:
        return float("-inf")
    return (later - earlier) / _NS_PER_SECOND


def format_timestamp(ts: Timestamp) -> str:
    """Render a timestamp as RFC 3339 with nanoseconds in UTC.

    Trailing zeros of the fractional part are trimmed and the fraction is
    omitted entirely for whole seconds. ABSENT renders as :data:`ZERO_TIME`.

    Example:
        >>> format_timestamp(1_700_000_000_120_000_000)
        '2023-11-14T22:13:20.12Z'
        >>> format_timestamp(None)
        '0001-01-01T00:00:00Z'
    """
    if ts is ABSENT:
        return ZERO_TIME
    seconds, nanos = divmod(ts, _NS_PER_SECOND)
    base = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    if nanos:
        base += "." + f"{nanos:09d}".rstrip("0")
    return base + "Z"
