"""Configuration management for fileage-exporter.

This module loads configuration from defaults, a TOML config file,
environment variables and CLI arguments, validates it, and freezes it into a
:class:`Config` dataclass. The exporter treats the result as read-only.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``FILEAGE_EXPORTER_FILE_START``: Path of the start marker file.
    * ``FILEAGE_EXPORTER_FILE_END``: Path of the end marker file.
    * ``FILEAGE_EXPORTER_LISTEN``: ``host:port`` to listen at.
    * ``FILEAGE_EXPORTER_PROM_ENDPOINT`` / ``_HEALTH_ENDPOINT`` / ``_LIVENESS_ENDPOINT``.
    * ``FILEAGE_EXPORTER_HEALTH_TIMEOUT`` / ``_LIVENESS_TIMEOUT``: Durations.
    * ``FILEAGE_EXPORTER_HEALTH_GRACE``: Warm-up window during which health is reported ok.
    * ``FILEAGE_EXPORTER_DIRECTORY_TIMEOUT``: How long to wait for missing directories.
    * ``FILEAGE_EXPORTER_NAMESPACE`` / ``_SUBSYSTEM``: Prometheus metric name prefixes.
    * ``FILEAGE_EXPORTER_LOG_FILE`` / ``_LOG_LEVEL``: Logging destination and level.

Durations accept Go-style strings ("90s", "10m", "1h30m", "250ms") or a
plain number of seconds.
"""

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Tuple

import tomli

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config", "parse_duration", "parse_listen_address"]

CONFIG_TABLE = "fileage-exporter"
ENV_PREFIX = "FILEAGE_EXPORTER_"

DEFAULT_TIMEOUT_SECONDS = 600.0

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_DURATION_FIELDS = ("health_timeout", "liveness_timeout", "health_grace", "directory_timeout")
_ENDPOINT_FIELDS = ("prom_endpoint", "health_endpoint", "liveness_endpoint")


@dataclass(frozen=True)
class Config:
    """Define the exporter configuration.

    Attributes:
        file_start (str): Path of the start marker file, "" to disable.
        file_end (str): Path of the end marker file. Required.
        listen (str): ``host:port`` to listen at. Defaults to ":9676".
        prom_endpoint (str): URL path of the metrics. Defaults to "/metrics".
        health_endpoint (str): URL path of the health probe. Defaults to "/healthz".
        liveness_endpoint (str): URL path of the liveness probe. Defaults to "/liveness".
        health_timeout (float): Seconds after the last update at which the
            service is considered unhealthy. Defaults to 600.
        liveness_timeout (float): Same for liveness. Defaults to 600.
        health_grace (float): Seconds after startup during which health is
            always reported ok. Defaults to 600.
        directory_timeout (float): Seconds to wait for missing directories. Defaults to 600.
        namespace (str): Prometheus namespace. Defaults to "".
        subsystem (str): Prometheus subsystem. Defaults to "".
        log_file (Optional[str]): Absolute path to a log file. Defaults to None.
        log_level (str): Logging level. Defaults to "INFO".
    """

    file_start: str
    file_end: str
    listen: str
    prom_endpoint: str
    health_endpoint: str
    liveness_endpoint: str
    health_timeout: float
    liveness_timeout: float
    health_grace: float
    directory_timeout: float
    namespace: str
    subsystem: str
    log_file: Optional[str]
    log_level: str


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Args:
        value (Any): A number of seconds, or a string such as "10m", "1h30m",
            "1.5s" or "250ms".

    Returns:
        float: Duration in seconds.

    Raises:
        ValueError: If the value is malformed, not finite or negative.

    Examples:
        >>> parse_duration("1h30m")
        5400.0
        >>> parse_duration("250ms")
        0.25
        >>> parse_duration(12)
        12.0
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            raise ValueError("Invalid duration: empty string")
        try:
            seconds = float(text)
        except ValueError:
            sign = 1.0
            if text[0] in "+-":
                sign = -1.0 if text[0] == "-" else 1.0
                text = text[1:]
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text) or pos == 0:
                raise ValueError(f"Invalid duration: {value!r}")
            seconds *= sign
    if not math.isfinite(seconds):
        raise ValueError(f"Invalid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"Duration must be non-negative, got {value!r}")
    return seconds


def parse_listen_address(listen: str) -> Tuple[str, int]:
    """Split ``host:port`` into a bind address tuple.

    An empty host binds all interfaces. IPv6 hosts may be bracketed.

    Raises:
        ValueError: If the port is missing or out of range.

    Examples:
        >>> parse_listen_address(":9676")
        ('', 9676)
        >>> parse_listen_address("[::1]:8080")
        ('::1', 8080)
    """
    host, sep, port_str = listen.rpartition(":")
    if not sep:
        raise ValueError(f"Listen address must be host:port, got {listen!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_str)
    except ValueError as e:
        raise ValueError(f"Invalid port in listen address {listen!r}") from e
    if not (0 <= port <= 65535):
        raise ValueError(f"Port must be between 0 and 65535, got {port}")
    return host, port


def _get_config_file_paths(explicit: Optional[str]) -> List[str]:
    """Return candidate config file paths in order of priority."""
    if explicit:
        return [os.path.expanduser(explicit)]

    paths = ["fileage-exporter.toml"]
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), "fileage-exporter", "config.toml"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", "fileage-exporter", "config.toml"))
    return paths


def _read_config_file(path: str, required: bool) -> Dict[str, Any]:
    """Read the ``[fileage-exporter]`` table of a TOML file.

    Raises:
        ValueError: If ``required`` and the file cannot be read or parsed.
    """
    try:
        with open(path, "rb") as f:
            document = tomli.load(f)
    except (tomli.TOMLDecodeError, UnicodeDecodeError, OSError) as e:
        if required:
            raise ValueError(f"Failed to read config file {path}: {e}") from e
        logger.error(f"Failed to parse config file {path}: {e}")
        return {}

    table = document.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ValueError(f"[{CONFIG_TABLE}] in {path} must be a table")
    return {key.replace("-", "_"): value for key, value in table.items()}


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically
            ``vars(parser.parse_args())``. Keys match :class:`Config`
            attributes; ``config`` names an explicit config file and
            ``debug`` forces the DEBUG log level. Values of None are ignored
            so lower-priority sources take effect.

    Returns:
        Config: The resolved configuration.

    Raises:
        ValueError: If the end file is missing, a duration or listen address
            is malformed, an endpoint is invalid, or the log level is unknown.

    Examples:
        >>> config = load_config({"file_end": "/var/run/job/end"})
        >>> config.listen, config.health_timeout
        (':9676', 600.0)
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "file_start": "",
        "file_end": "",
        "listen": ":9676",
        "prom_endpoint": "/metrics",
        "health_endpoint": "/healthz",
        "liveness_endpoint": "/liveness",
        "health_timeout": DEFAULT_TIMEOUT_SECONDS,
        "liveness_timeout": DEFAULT_TIMEOUT_SECONDS,
        "health_grace": DEFAULT_TIMEOUT_SECONDS,
        "directory_timeout": DEFAULT_TIMEOUT_SECONDS,
        "namespace": "",
        "subsystem": "",
        "log_file": None,
        "log_level": "INFO",
    }
    config_fields = {f.name for f in fields(Config)}

    # 2. Config File
    explicit_config = args.get("config")
    for path in _get_config_file_paths(explicit_config):
        if explicit_config or os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            for key, value in _read_config_file(path, required=bool(explicit_config)).items():
                if key not in config_fields:
                    logger.warning(f"Ignoring unknown config key '{key}' in {path}")
                    continue
                if value is not None and value != "":
                    config_values[key] = value
            break

    # 3. Environment Variables
    for key in config_fields:
        val = os.getenv(ENV_PREFIX + key.upper())
        if val is not None and val != "":
            config_values[key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None and key in config_fields:
            config_values[key] = value

    for key in _DURATION_FIELDS:
        try:
            config_values[key] = parse_duration(config_values[key])
        except ValueError as e:
            raise ValueError(f"Invalid {key.replace('_', '-')}: {e}") from e

    for key in ("file_start", "file_end", "namespace", "subsystem", "listen"):
        config_values[key] = str(config_values[key]).strip()

    if not config_values["file_end"]:
        raise ValueError("The end file must be set (--file-end).")

    parse_listen_address(config_values["listen"])

    for key in _ENDPOINT_FIELDS:
        if not str(config_values[key]).startswith("/"):
            raise ValueError(f"{key.replace('_', '-')} must start with '/', got {config_values[key]!r}")
    endpoints = [config_values[key] for key in _ENDPOINT_FIELDS]
    if len(set(endpoints)) != len(endpoints):
        raise ValueError(f"Endpoints must be distinct, got {endpoints}")

    if config_values["log_file"]:
        config_values["log_file"] = os.path.abspath(os.path.expanduser(str(config_values["log_file"])))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"
    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    return Config(**{k: v for k, v in config_values.items() if k in config_fields})
