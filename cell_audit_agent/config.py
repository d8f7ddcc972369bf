"""Configuration management for cell-audit-agent.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates every path and timing
value before the agent starts. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows),
and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``CELL_AUDIT_DATA_DIR``: Directory holding the event log and the state file.
    * ``CELL_AUDIT_ATTACHMENT_PATH``: JSON snapshot of the visible cells.
    * ``CELL_AUDIT_FIX_PATH``: JSON snapshot of the latest position fix.
    * ``CELL_AUDIT_FIX_INTERVAL`` / ``CELL_AUDIT_FIX_TIMEOUT``: Cadence and request bound.
    * ``CELL_AUDIT_DEBOUNCE_SECONDS``: Dedup threshold for serving-cell reports.
    * ``CELL_AUDIT_LOG_FILE`` / ``CELL_AUDIT_LOG_LEVEL``: Logging destination and level.
    * ``CELL_AUDIT_ACTIVITYWATCH`` / ``CELL_AUDIT_PORT``: ActivityWatch mirror.
    * ``CELL_AUDIT_TESTING``: Enable testing mode.
    * One ``CELL_AUDIT_<KEY>`` variable for every other :class:`Config` field.

Configuration Loading Invariants:
    * **Path Validation**: Paths are expanded and resolved; symlinks and non-regular
      files are rejected, and write permission is verified for files the agent writes.
    * **Timing Consistency**: A fix request always ends before the next cycle
      (``fix_timeout < fix_interval``) and backoff bounds are ordered.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config", "default_data_dir"]

APP_NAME = "cell-audit-agent"
ENV_PREFIX = "CELL_AUDIT_"

_TRUE_STRINGS = ("true", "1", "yes", "on")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        data_dir (str): Directory for ``tower_logs.csv`` and ``state.json``.
        attachment_path (Optional[str]): Cell snapshot file. None means unavailable.
        fix_path (Optional[str]): Fix snapshot file. None means unavailable.
        status_file (Optional[str]): One-line status file. None logs status only.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        testing (bool): Use the mock ActivityWatch client. Defaults to False.
        activitywatch (bool): Mirror observations into ActivityWatch. Defaults to False.
        port (Optional[int]): Port for the ActivityWatch server. Defaults to 5600.
        fix_interval (float): Fix cadence and nominal heartbeat interval. Defaults to 300.
        fix_timeout (float): Bound on a periodic fix request. Defaults to 240.
        resurrection_timeout (float): Bound on the resurrection fix. Defaults to 30.
        max_fix_age (float): Oldest fix a resurrection accepts. Defaults to 120.
        debounce_seconds (float): Dedup threshold. Defaults to 5.
        stale_wake_fraction (float): Spurious-wake window as a fraction of fix_interval.
        backoff_base (Optional[float]): Backoff base delay. None means fix_interval.
        backoff_multiplier (float): Backoff growth factor. Defaults to 2.
        backoff_min (float): Backoff floor. Defaults to 1800.
        backoff_max (float): Backoff ceiling. Defaults to 21600.
        heartbeat_coalesce (float): Heartbeats closer than this only refresh the timestamp.
        attachment_heartbeat (bool): Serving-cell batches count as heartbeats. Defaults to True.
    """

    data_dir: str
    attachment_path: Optional[str]
    fix_path: Optional[str]
    status_file: Optional[str]
    log_file: Optional[str]
    log_level: str
    testing: bool
    activitywatch: bool
    port: Optional[int]
    fix_interval: float
    fix_timeout: float
    resurrection_timeout: float
    max_fix_age: float
    debounce_seconds: float
    stale_wake_fraction: float
    backoff_base: Optional[float]
    backoff_multiplier: float
    backoff_min: float
    backoff_max: float
    heartbeat_coalesce: float
    attachment_heartbeat: bool

    @property
    def event_log_path(self) -> str:
        return os.path.join(self.data_dir, "tower_logs.csv")

    @property
    def state_path(self) -> str:
        return os.path.join(self.data_dir, "state.json")


DEFAULTS: Dict[str, Any] = {
    "data_dir": None,
    "attachment_path": None,
    "fix_path": None,
    "status_file": None,
    "log_file": None,
    "log_level": "INFO",
    "testing": False,
    "activitywatch": False,
    "port": 5600,
    "fix_interval": 300.0,
    "fix_timeout": 240.0,
    "resurrection_timeout": 30.0,
    "max_fix_age": 120.0,
    "debounce_seconds": 5.0,
    "stale_wake_fraction": 0.5,
    "backoff_base": None,
    "backoff_multiplier": 2.0,
    "backoff_min": 1800.0,
    "backoff_max": 21600.0,
    "heartbeat_coalesce": 30.0,
    "attachment_heartbeat": True,
}


def _app_dir(base: str, *parts: str) -> str:
    return os.path.join(os.path.expanduser(base), *parts)


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/cell-audit-agent/config.ini` (Linux/macOS).
    3. `%APPDATA%\\cell-audit-agent\\config.ini` (Windows).
    4. `~/.config/cell-audit-agent/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(_app_dir(xdg_config_home, APP_NAME, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(_app_dir(os.environ["APPDATA"], APP_NAME, "config.ini"))
    else:
        paths.append(_app_dir("~", ".config", APP_NAME, "config.ini"))
    return paths


def default_data_dir() -> str:
    """Return ``$XDG_DATA_HOME/cell-audit-agent`` or its platform equivalent."""
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        return _app_dir(xdg_data_home, APP_NAME)
    if os.name == "nt" and os.environ.get("LOCALAPPDATA"):
        return _app_dir(os.environ["LOCALAPPDATA"], APP_NAME)
    return _app_dir("~", ".local", "share", APP_NAME)


def _validate_dir(path_str: str) -> str:
    """Resolve ``path_str`` as a writable directory, creating it if needed.

    Raises:
        ValueError: If the path is a symlink, not a directory, or not writable.
    """
    path = Path(os.path.expanduser(path_str))
    if path.is_symlink():
        raise ValueError(f"Invalid path: Symlinks are not allowed (security): {path}")
    try:
        path.mkdir(parents=True, exist_ok=True)
        resolved = path.resolve(strict=True)
    except OSError as e:
        raise ValueError(f"Cannot create data directory {path}: {e}") from e
    if not resolved.is_dir():
        raise ValueError(f"Invalid path: data_dir is not a directory: {resolved}")
    if not os.access(str(resolved), os.W_OK):
        raise ValueError(f"Write permission denied for data_dir: {resolved}")
    return str(resolved)


def _validate_file(path_str: str, writable: bool) -> str:
    """Resolve and validate a file path, expanding the user tilde.

    Input snapshots may not exist yet (the helper that writes them can start
    later) but their parent directory must. Files the agent writes are
    created to verify permissions.

    Args:
        path_str (str): The raw path string to validate (e.g., "~/cells.json").
        writable (bool): Whether the agent writes to this file.

    Returns:
        str: The resolved, absolute path string.

    Raises:
        ValueError: If the path is a symlink, not a regular file, its parent is
            missing, or permissions are insufficient.
    """
    try:
        path = Path(os.path.expanduser(path_str))

        if path.is_symlink():
            raise ValueError(f"Invalid path: Symlinks are not allowed (security): {path}")

        try:
            resolved = path.resolve(strict=True)
        except FileNotFoundError:
            try:
                parent = path.parent.resolve(strict=True)
                resolved = parent / path.name
            except (FileNotFoundError, RuntimeError, OSError) as e:
                raise ValueError(f"Invalid path (parent directory not found): {path}") from e
        except (RuntimeError, OSError) as e:
            raise ValueError(f"Error resolving path {path}: {e}") from e

        if resolved.exists() and not resolved.is_file():
            raise ValueError(f"Invalid path: not a regular file (directories/devices not allowed): {resolved}")

        if writable:
            try:
                with resolved.open("a"):
                    pass
            except PermissionError as e:
                raise ValueError(f"Write permission denied: {resolved}") from e
            except OSError as e:
                raise ValueError(f"Cannot create file {resolved}: {e}") from e
        elif resolved.exists():
            try:
                with resolved.open("r"):
                    pass
            except PermissionError as e:
                raise ValueError(f"Read permission denied: {resolved}") from e

        return str(resolved)

    except Exception as e:
        if isinstance(e, ValueError):
            raise
        raise ValueError(f"Path validation failed for '{path_str}': {e}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _cast(values: Dict[str, Any], key: str, caster: Callable[[Any], Any], kind: str) -> None:
    if values[key] is None:
        return
    try:
        values[key] = caster(values[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {kind} for {key}: {values[key]}") from e


def _require_positive(values: Dict[str, Any], *keys: str) -> None:
    for key in keys:
        if values[key] is not None and values[key] <= 0:
            raise ValueError(f"{key} must be positive, got {values[key]}")


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Priority Order (Highest to Lowest):
        1. CLI Arguments (passed via `args`)
        2. Environment Variables (``CELL_AUDIT_<KEY>``)
        3. Config File (section ``[cell-audit-agent]``)
        4. Hardcoded Defaults

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Values of None are ignored so lower-priority sources take effect.
            Typically obtained via ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a numeric value is invalid, the timing values are
            inconsistent, the log level is unknown, or path validation fails.

    Examples:
        >>> import os
        >>> os.environ["CELL_AUDIT_FIX_INTERVAL"] = "600"
        >>> config = load_config({"fix_timeout": 120, "data_dir": "/tmp/cell-audit-doctest"})
        >>> config.fix_interval, config.fix_timeout
        (600.0, 120.0)
        >>> del os.environ["CELL_AUDIT_FIX_INTERVAL"]
    """
    # 1. Defaults
    config_values: Dict[str, Any] = dict(DEFAULTS)

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if APP_NAME in parser:
                    for key, value in parser[APP_NAME].items():
                        if key not in config_values:
                            logger.warning(f"Ignoring unknown config key '{key}' in {path}")
                            continue
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    for config_key in DEFAULTS:
        val = os.getenv(ENV_PREFIX + config_key.upper())
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None and key in config_values:
            config_values[key] = value

    # Type casting
    _cast(config_values, "port", int, "integer")
    for key in (
        "fix_interval",
        "fix_timeout",
        "resurrection_timeout",
        "max_fix_age",
        "debounce_seconds",
        "stale_wake_fraction",
        "backoff_base",
        "backoff_multiplier",
        "backoff_min",
        "backoff_max",
        "heartbeat_coalesce",
    ):
        _cast(config_values, key, float, "float")
    for key in ("testing", "activitywatch", "attachment_heartbeat"):
        config_values[key] = _as_bool(config_values[key])

    # Range checks
    if config_values["port"] is not None and not (1 <= config_values["port"] <= 65535):
        raise ValueError(f"Port must be between 1 and 65535, got {config_values['port']}")
    _require_positive(
        config_values,
        "fix_interval",
        "fix_timeout",
        "resurrection_timeout",
        "max_fix_age",
        "backoff_base",
        "backoff_max",
    )
    if config_values["fix_timeout"] >= config_values["fix_interval"]:
        raise ValueError(
            f"fix_timeout ({config_values['fix_timeout']}) must be below fix_interval ({config_values['fix_interval']})"
        )
    if config_values["debounce_seconds"] < 0:
        raise ValueError(f"debounce_seconds must be non-negative, got {config_values['debounce_seconds']}")
    if config_values["heartbeat_coalesce"] < 0:
        raise ValueError(f"heartbeat_coalesce must be non-negative, got {config_values['heartbeat_coalesce']}")
    if not (0.0 <= config_values["stale_wake_fraction"] < 1.0):
        raise ValueError(f"stale_wake_fraction must be in [0, 1), got {config_values['stale_wake_fraction']}")
    if config_values["backoff_multiplier"] < 1.0:
        raise ValueError(f"backoff_multiplier must be >= 1, got {config_values['backoff_multiplier']}")
    if config_values["backoff_min"] < 0 or config_values["backoff_min"] > config_values["backoff_max"]:
        raise ValueError(
            f"backoff_min ({config_values['backoff_min']}) must be between 0 and backoff_max ({config_values['backoff_max']})"
        )

    # Paths
    config_values["data_dir"] = _validate_dir(str(config_values["data_dir"] or default_data_dir()))
    for key in ("attachment_path", "fix_path"):
        if config_values[key]:
            config_values[key] = _validate_file(str(config_values[key]), writable=False)
        else:
            config_values[key] = None
    for key in ("status_file", "log_file"):
        if config_values[key]:
            config_values[key] = _validate_file(str(config_values[key]), writable=True)
        else:
            config_values[key] = None

    # Handle debug flag
    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    # Validate log_level
    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
