"""
Directory watching for the marker files using watchdog.

Responsibility:
    Deliver a best-effort stream of "something changed in this directory"
    notifications for the parent directory of a marker file. Interpreting
    the change (re-measuring mtimes) is left to the consumer.

Design:
    - **Parent directory watch**: batch processes often write markers via
      rename or recreate them, so the directory is watched instead of the
      file. Notifications are coarse and the consumer narrows them by base
      name with :meth:`WatchEvent.concerns`.
    - **Shared queue**: every watcher pushes :class:`WatchEvent` items into
      one ``queue.Queue``; a single blocking ``get()`` waits on all sources.
    - **Bounded attach**: the directory may not exist yet at startup. Attach
      retries with exponential backoff (1s, 2s, 4s, ...) until a deadline
      and then raises :class:`DirectoryTimeoutError`. A set stop event ends
      the wait early with :class:`AttachCancelledError`.
    - **Disabled source**: an unconfigured path gets a :class:`DisabledWatcher`
      that never produces events and never touches the filesystem.

Key Invariants:
    - The watcher never modifies the watched directory (read-only).
    - Watch errors after a successful attach are reported as ``error`` events
      and never stop the stream.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from typing import NamedTuple, Optional, Tuple, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "AttachCancelledError",
    "DirectoryTimeoutError",
    "DirectoryWatcher",
    "DisabledWatcher",
    "MarkerEventHandler",
    "WatchEvent",
    "attach",
]

INITIAL_BACKOFF_SECONDS = 1.0
HEALTH_CHECK_INTERVAL_SECONDS = 10.0

EVENT_CHANGE = "change"
EVENT_ERROR = "error"

# Read-only notifications; they never change an mtime.
IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


class DirectoryTimeoutError(RuntimeError):
    """Raised when a watched directory did not become available in time."""

    def __init__(self, directory: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f'Giving up adding directory "{directory}": {cause}')
        self.directory = directory
        self.cause = cause


class AttachCancelledError(RuntimeError):
    """Raised when shutdown was requested while waiting for a directory."""

    def __init__(self, directory: str) -> None:
        super().__init__(f'Stopped waiting for directory "{directory}"')
        self.directory = directory


class WatchEvent(NamedTuple):
    """One notification from a watcher.

    Attributes:
        source (str): Which marker the watcher serves ("start" or "end").
        kind (str): ``EVENT_CHANGE`` or ``EVENT_ERROR``.
        paths (Tuple[str, ...]): Paths touched by the change (source and,
            for moves, destination).
        error (Optional[str]): Description for error events.
    """

    source: str
    kind: str
    paths: Tuple[str, ...] = ()
    error: Optional[str] = None

    def concerns(self, basename: str) -> bool:
        """Return True if any path of the event has the given base name."""
        return any(os.path.basename(p) == basename for p in self.paths)


class MarkerEventHandler(FileSystemEventHandler):
    """Forward file events of one directory into the shared event queue."""

    def __init__(self, source: str, events: "queue.Queue[Optional[WatchEvent]]") -> None:
        super().__init__()
        self.source = source
        self.events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in IGNORED_EVENT_TYPES:
            return

        paths = [os.fsdecode(event.src_path)]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            paths.append(os.fsdecode(dest_path))

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"fs event ({self.source}): {event.event_type} on {paths}")
        self.events.put(WatchEvent(self.source, EVENT_CHANGE, tuple(paths)))

    def __repr__(self) -> str:
        return f"<MarkerEventHandler source={self.source}>"


class DisabledWatcher:
    """Stand-in for an unconfigured marker file. Produces nothing."""

    enabled = False

    def __init__(self, source: str) -> None:
        self.source = source
        self.path = ""
        self.basename = ""

    def attach(self, deadline: float, stop_event: Optional[threading.Event] = None) -> None:
        logger.debug(f"No {self.source} file configured, not watching.")

    def stop(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<DisabledWatcher source={self.source}>"


class DirectoryWatcher:
    """Watch the parent directory of one marker file.

    Attributes:
        source (str): Label of the marker ("start" or "end").
        path (str): Absolute path of the marker file.
        basename (str): Base name used to narrow directory events.
        watch_dir (str): Directory being watched.
        events (queue.Queue): Shared destination for :class:`WatchEvent` items.

    Example:
        >>> events = queue.Queue()
        >>> watcher = DirectoryWatcher("end", "/var/run/job/end", events)
        >>> watcher.attach(deadline=time.monotonic() + 600)
        >>> # ...
        >>> watcher.stop()
    """

    enabled = True

    def __init__(
        self,
        source: str,
        path: str,
        events: "queue.Queue[Optional[WatchEvent]]",
    ) -> None:
        self.source = source
        self.path = os.path.abspath(path)
        self.basename = os.path.basename(self.path)
        self.watch_dir = os.path.dirname(self.path)
        self.events = events
        self.handler = MarkerEventHandler(source, events)
        self._observer: Optional[Observer] = None
        self._stopping = False
        self._observer_lock = threading.Lock()
        self._health_check_timer: Optional[threading.Timer] = None

    def _start_observer(self) -> None:
        """Create, schedule and start a fresh observer on ``watch_dir``.

        Raises:
            FileNotFoundError: If the directory does not exist.
            OSError: If the platform watch cannot be registered.
        """
        if not os.path.isdir(self.watch_dir):
            raise FileNotFoundError(f"No such directory: {self.watch_dir}")

        observer = Observer()
        observer.schedule(self.handler, self.watch_dir, recursive=False)
        observer.start()
        self._observer = observer
        logger.info(f"Watching directory {self.watch_dir} for {self.source} file ({type(observer).__name__})")

    def attach(self, deadline: float, stop_event: Optional[threading.Event] = None) -> None:
        """Register the directory watch, retrying with exponential backoff.

        The first attempt is immediate. After a failure the watcher waits
        1s, then 2s, 4s and so on. If the deadline arrives first, it gives up.

        Args:
            deadline (float): ``time.monotonic()`` value after which to give up.
            stop_event (Optional[threading.Event]): Set on shutdown. Ends any
                wait between attempts at once.

        Raises:
            DirectoryTimeoutError: If the directory could not be watched
                before the deadline.
            AttachCancelledError: If ``stop_event`` was set while waiting.
        """
        backoff = INITIAL_BACKOFF_SECONDS
        while True:
            if stop_event is not None and stop_event.is_set():
                raise AttachCancelledError(self.watch_dir)
            try:
                self._start_observer()
                break
            except OSError as e:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or backoff >= remaining:
                    if remaining > 0:
                        self._pause(remaining, stop_event)
                    logger.error(f'Giving up adding directory "{self.watch_dir}": {e}')
                    raise DirectoryTimeoutError(self.watch_dir, e) from e
                logger.warning(f'Retrying to add directory "{self.watch_dir}" in {backoff:g}s after error: {e}')
                self._pause(backoff, stop_event)
                backoff *= 2

        self._schedule_health_check()

    def _pause(self, seconds: float, stop_event: Optional[threading.Event]) -> None:
        if stop_event is None:
            time.sleep(seconds)
        elif stop_event.wait(seconds):
            logger.info(f'Shutdown requested while waiting for directory "{self.watch_dir}"')
            raise AttachCancelledError(self.watch_dir)

    def check_health(self) -> None:
        """Report and replace a dead observer thread.

        Returns:
            None
        """
        with self._observer_lock:
            if self._stopping or self._observer is None:
                return
            if self._observer.is_alive():
                return

            message = f"observer for {self.watch_dir} died"
            logger.critical(f"Watchdog {message}.")
            self.events.put(WatchEvent(self.source, EVENT_ERROR, error=message))
            try:
                self._start_observer()
                logger.info(f"Observer for {self.watch_dir} restarted")
            except OSError as e:
                self.events.put(WatchEvent(self.source, EVENT_ERROR, error=f"restarting observer failed: {e}"))

    def _schedule_health_check(self) -> None:
        if self._stopping:
            return
        self._health_check_timer = threading.Timer(HEALTH_CHECK_INTERVAL_SECONDS, self._run_health_check)
        self._health_check_timer.daemon = True
        self._health_check_timer.start()

    def _run_health_check(self) -> None:
        if self._stopping:
            return
        try:
            self.check_health()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
        finally:
            self._schedule_health_check()

    def stop(self) -> None:
        """Stop the observer and the health check timer.

        Returns:
            None
        """
        # Waits for a restart in progress, so its observer is the one stopped.
        with self._observer_lock:
            self._stopping = True
            observer = self._observer
        if self._health_check_timer:
            self._health_check_timer.cancel()
            self._health_check_timer = None
        if observer:
            try:
                if observer.is_alive():
                    observer.stop()
                    observer.join(timeout=5.0)
                    if observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except RuntimeError as e:
                logger.error(f"Error stopping observer: {e}")
        logger.debug(f"Stopped watching {self.watch_dir}")

    def __repr__(self) -> str:
        state = "alive" if self._observer and self._observer.is_alive() else "down"
        return f"<DirectoryWatcher source={self.source} path={self.path} observer={state}>"


def attach(
    source: str,
    path: str,
    deadline: float,
    events: "queue.Queue[Optional[WatchEvent]]",
    stop_event: Optional[threading.Event] = None,
) -> Union[DirectoryWatcher, DisabledWatcher]:
    """Create and attach a watcher for ``path``.

    Args:
        source (str): Marker label for events and log messages.
        path (str): Marker file path; "" disables watching.
        deadline (float): Monotonic deadline for the directory to appear.
        events (queue.Queue): Destination of the watcher's events.
        stop_event (Optional[threading.Event]): Cancels a pending attach.

    Returns:
        Union[DirectoryWatcher, DisabledWatcher]: The attached watcher.

    Raises:
        DirectoryTimeoutError: If the directory did not appear in time.
        AttachCancelledError: If ``stop_event`` was set while waiting.
    """
    watcher: Union[DirectoryWatcher, DisabledWatcher]
    if not path:
        watcher = DisabledWatcher(source)
    else:
        watcher = DirectoryWatcher(source, path, events)
    watcher.attach(deadline, stop_event)
    return watcher
