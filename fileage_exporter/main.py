"""Main entry point for fileage-exporter.

This module handles the command-line interface (CLI), configuration loading,
logging setup and the process lifecycle. It builds the Exporter, attaches
the directory watchers and serves the HTTP endpoints until a signal arrives.

Key Responsibilities:
    - CLI Argument Parsing: Handles --file-start, --file-end, --listen, etc.
    - Signal Handling: SIGINT/SIGTERM trigger a graceful shutdown.
    - Logging: Console logging plus optional rotating file logging (10MB).
    - Startup Fatals: Configuration errors, a directory that never appears
      and a listener that cannot bind terminate the process with status 1.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import List, Optional

from fileage_exporter import __version__
from fileage_exporter.config import load_config
from fileage_exporter.exporter import Exporter
from fileage_exporter.server import ExporterHTTPServer, make_server
from fileage_exporter.watcher import AttachCancelledError, DirectoryTimeoutError

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Run starts/ends, startup and shutdown.
            - ``WARNING``: Directory attach retries, watcher errors.
            - ``ERROR``/``CRITICAL``: Startup failures, dead observers.
            - ``DEBUG``: Raw fs events, probe evaluations, HTTP access.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files rotate at 10MB, keeping 5 backups.

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    """Return the CLI argument parser.

    Every option defaults to None so that environment variables and the
    config file can supply the value.
    """
    parser = argparse.ArgumentParser(
        prog="fileage-exporter",
        description="Export the age of start/end marker files as Prometheus metrics.",
    )
    parser.add_argument("--file-start", dest="file_start", default=None, help="the start file")
    parser.add_argument("--file-end", dest="file_end", default=None, help="the end file (required)")
    parser.add_argument("--listen", default=None, help="host:port to listen at (default: :9676)")
    parser.add_argument(
        "--prom", dest="prom_endpoint", default=None,
        help="publish prometheus metrics on this URL endpoint (default: /metrics)",
    )
    parser.add_argument(
        "--health", dest="health_endpoint", default=None,
        help="publish health status on this URL endpoint (default: /healthz)",
    )
    parser.add_argument(
        "--liveness", dest="liveness_endpoint", default=None,
        help="publish liveness status on this URL endpoint (default: /liveness)",
    )
    parser.add_argument("--namespace", default=None, help="prometheus namespace")
    parser.add_argument("--subsystem", default=None, help="prometheus subsystem")
    parser.add_argument(
        "--health-timeout", dest="health_timeout", default=None,
        help="when should the service be considered unhealthy (default: 10m)",
    )
    parser.add_argument(
        "--liveness-timeout", dest="liveness_timeout", default=None,
        help="when should the service be considered un-live (default: 10m)",
    )
    parser.add_argument(
        "--health-grace", "--health-welpenschutz", dest="health_grace", default=None,
        help="how long initially the service is considered healthy (default: 10m)",
    )
    parser.add_argument(
        "--directory-timeout", dest="directory_timeout", default=None,
        help="how long to wait for missing directories (default: 10m)",
    )
    parser.add_argument("--config", default=None, help="path to a TOML config file")
    parser.add_argument("--log-file", dest="log_file", default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", dest="log_level", default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (overrides --log-level).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Run the exporter until SIGINT/SIGTERM.

    Args:
        argv (Optional[List[str]]): Arguments, defaults to ``sys.argv[1:]``.

    Raises:
        SystemExit: Status 2 for CLI usage errors (argparse), status 1 for
            configuration errors and startup fatals.

    Example:
        $ fileage-exporter --file-start /run/job/start --file-end /run/job/end
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")

    logger.info(f"Starting fileage-exporter v{__version__} (PID: {os.getpid()})...")

    exporter: Optional[Exporter] = None
    server: Optional[ExporterHTTPServer] = None
    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        exporter = Exporter(config)
        exporter.start(stop_event)
        server = make_server(exporter)

        server_thread = threading.Thread(target=server.serve_forever, name="ExporterHTTPServer", daemon=True)
        server_thread.start()

        stop_event.wait()
    except AttachCancelledError:
        logger.info("Shutdown requested during startup.")
    except DirectoryTimeoutError as e:
        logger.critical(f"{e}")
        sys.exit(1)
    except (OSError, ValueError) as e:
        logger.critical(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if server is not None:
            server.shutdown()
            server.server_close()
        if exporter is not None:
            exporter.stop()


if __name__ == "__main__":
    main()
