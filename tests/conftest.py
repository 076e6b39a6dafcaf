from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Generator, List

import pytest

from fileage_exporter.config import Config
from fileage_exporter.metrics import ExporterMetrics
from fileage_exporter.state import RunStateTracker

SECOND_NS = 1_000_000_000


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Keep config loading away from the real environment and config files."""
    for key in list(os.environ):
        if key.startswith("FILEAGE_EXPORTER_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def make_config(temp_dir: Path) -> Callable[..., Config]:
    """Factory for Config objects pointing into ``temp_dir``."""
    def _make(**overrides: Any) -> Config:
        values = {
            "file_start": "",
            "file_end": str(temp_dir / "end"),
            "listen": "127.0.0.1:0",
            "prom_endpoint": "/metrics",
            "health_endpoint": "/healthz",
            "liveness_endpoint": "/liveness",
            "health_timeout": 600.0,
            "liveness_timeout": 600.0,
            "health_grace": 0.0,
            "directory_timeout": 0.0,
            "namespace": "",
            "subsystem": "",
            "log_file": None,
            "log_level": "INFO",
        }
        values.update(overrides)
        return Config(**values)
    return _make


@pytest.fixture
def metrics() -> ExporterMetrics:
    return ExporterMetrics()


@pytest.fixture
def tracker(metrics: ExporterMetrics) -> RunStateTracker:
    """Tracker whose exporter started at t=1000s."""
    return RunStateTracker(metrics, startup=1000 * SECOND_NS)


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def _place_file(path: Path, mtime_ns: int) -> None:
    """Atomically put ``path`` in place with the given mtime.

    The file is prepared under a temporary name and renamed, so a watcher
    only ever sees the final mtime.
    """
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text("x", encoding="utf-8")
    os.utime(tmp, ns=(mtime_ns, mtime_ns))
    os.replace(tmp, path)


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def place_file() -> Callable[[Path, int], None]:
    return _place_file


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    return _wait_for
