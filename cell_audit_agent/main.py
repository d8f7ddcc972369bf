"""Main entry point for cell-audit-agent.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the main wait loop. It builds the :class:`Agent` and keeps
the process alive until a signal arrives.

Key Responsibilities:
    - CLI Argument Parsing: Handles --data-dir, --attachment-path, --fix-path, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM to ensure graceful shutdown.
    - Resource Management: Monitors CPU/Memory usage and logs anomalies.
    - Logging: Configures logging with rotation (10MB x 5).
    - Startup/Shutdown Invariants: Ensures graceful exit with resource cleanup
      (stopping timers, closing the event log) via atexit and finally blocks.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Any, Dict, List, Optional

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

try:
    from cell_audit_agent.agent import Agent, reset_state, service_requested
    from cell_audit_agent.config import load_config
    from cell_audit_agent.store import JsonFileStore
    from cell_audit_agent import __version__
except ImportError as e:
    # Check if it's a missing dependency
    if "watchdog" in str(e) or "aw_client" in str(e) or "aw_core" in str(e):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

try:
    import resource
except ImportError:
    resource = None  # type: ignore

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

# Global state for resource usage tracking
_last_rusage = None
_last_rusage_time = 0.0
_last_info_log_time = 0.0


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Normal operations (watchdog transitions, fixes, startup).
            - ``WARNING``: Recoverable issues (failed fix, unavailable source).
            - ``ERROR``: Failures that lose data (event log write failed).
            - ``CRITICAL``: The wake timer could not be armed.
            - ``DEBUG``: Detailed diagnostics (dedup rejections, raw snapshots).
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
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
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def _format_agent_stats(stats: Dict[str, Any]) -> str:
    msg = (
        f", Mode={stats.get('mode', 'n/a')}, Backoff={stats.get('backoff_count', 0)}, "
        f"Fixes={stats.get('fixes_succeeded', 0)}/{stats.get('fixes_requested', 0)}, "
        f"Skipped={stats.get('fixes_skipped', 0)}, "
        f"CellEvents={stats.get('attachment_events', 0)}, "
        f"Deduped={stats.get('dedup_rejected', 0)}, "
        f"Resurrections={stats.get('resurrections', 0)} (Failed={stats.get('resurrection_failures', 0)})"
    )
    uptime = stats.get("uptime", 0.0)
    m, s = divmod(int(uptime), 60)
    h, m = divmod(m, 60)
    msg += f", Uptime={h:02d}:{m:02d}:{s:02d}"

    last_hb = stats.get("last_heartbeat_at")
    if last_hb:
        msg += f", LastHB={time.time() - last_hb:.1f}s"
    return msg


def log_resource_usage(agent: Optional[Agent] = None) -> None:
    """Log current resource usage (CPU, Memory, Threads) and agent statistics.

    Monitors the process's resource consumption against defined targets (<1% CPU, <50MB RSS).
    Logs a warning if an anomaly is detected, or if the watchdog is in backoff
    or its timer could not be armed.

    Note:
        Resource usage monitoring requires the `resource` module (Unix-only).
        On non-Unix systems, only thread count and agent stats are logged.

    Args:
        agent (Optional[Agent]): Agent to retrieve statistics from.
    """
    global _last_rusage, _last_rusage_time, _last_info_log_time

    now = time.monotonic()
    stats_msg = ""
    max_rss_mb = 0.0
    cpu_percent = 0.0
    watchdog_degraded = False

    if resource:
        try:
            usage = resource.getrusage(resource.RUSAGE_SELF)

            # ru_maxrss is in KB on Linux, bytes on macOS.
            max_rss = usage.ru_maxrss
            if sys.platform == "darwin":
                max_rss_mb = max_rss / (1024 * 1024)
            else:
                max_rss_mb = max_rss / 1024

            if _last_rusage and _last_rusage_time > 0:
                time_delta = now - _last_rusage_time
                if time_delta > 1.0:
                    user_delta = usage.ru_utime - _last_rusage.ru_utime
                    sys_delta = usage.ru_stime - _last_rusage.ru_stime
                    cpu_percent = ((user_delta + sys_delta) / time_delta) * 100
                    _last_rusage = usage
                    _last_rusage_time = now

            if _last_rusage is None:
                _last_rusage = usage
                _last_rusage_time = now

            try:
                if os.path.exists('/proc/self/fd'):
                    num_fds = len(os.listdir('/proc/self/fd'))
                    stats_msg += f", FDs={num_fds}"
            except Exception as e:
                logger.debug(f"Failed to count FDs: {e}")

            stats_msg += f", User Time={usage.ru_utime:.2f}s, Sys Time={usage.ru_stime:.2f}s"
        except Exception as e:
            logger.debug(f"Failed to get resource usage: {e}")

    if agent:
        try:
            stats = agent.get_statistics()
            stats_msg += _format_agent_stats(stats)
            watchdog_degraded = stats.get("arm_failures", 0) > 0 or stats.get("mode") == "backoff"
        except Exception as e:
            logger.debug(f"Failed to get agent stats: {e}")

    # Thresholds: RSS > 50MB, CPU > 10%, Threads > 12
    try:
        thread_count = threading.active_count()
    except Exception as e:
        logger.debug(f"Failed to get thread count: {e}")
        thread_count = -1
    is_anomaly = max_rss_mb > 50 or cpu_percent > 10.0 or thread_count > 12 or watchdog_degraded
    should_log_info = (now - _last_info_log_time) > 300.0  # Log INFO every 5 minutes

    status_label = "ANOMALY" if is_anomaly else "OK"

    if resource:
        msg = (
            f"Resource Usage (PID={os.getpid()}) [{status_label}]: Max RSS={max_rss_mb:.2f}MB (Target <50MB), "
            f"CPU={cpu_percent:.2f}% (Target <1%), Threads={thread_count}{stats_msg}"
        )
    else:
        msg = (
            f"Resource Usage (PID={os.getpid()}) [{status_label}]: Max RSS=N/A, "
            f"CPU=N/A, Threads={thread_count}{stats_msg}"
        )

    if is_anomaly:
        logger.warning(f"Anomaly detected: {msg}")
        _last_info_log_time = now
    elif should_log_info:
        logger.info(msg)
        _last_info_log_time = now
    elif logger.isEnabledFor(logging.DEBUG):
        logger.debug(msg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Background cell and position audit agent."
    )
    parser.add_argument("--data-dir", type=str, default=None, help="Directory for the event log and state file.")
    parser.add_argument("--attachment-path", type=str, default=None, help="JSON snapshot of the visible cells.")
    parser.add_argument("--fix-path", type=str, default=None, help="JSON snapshot of the latest position fix.")
    parser.add_argument("--status-file", type=str, default=None, help="File receiving the one-line status.")
    parser.add_argument(
        "--fix-interval", type=float, default=None, help="Seconds between fix requests (default: 300)."
    )
    parser.add_argument(
        "--fix-timeout", type=float, default=None, help="Bound on one fix request in seconds (default: 240)."
    )
    parser.add_argument(
        "--debounce-seconds",
        type=float,
        default=None,
        help="Ignore serving-cell reports closer than this (default: 5).",
    )
    parser.add_argument(
        "--activitywatch",
        action="store_const",
        const=True,
        default=None,
        help="Mirror observations into ActivityWatch.",
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port of the ActivityWatch server (default: 5600)."
    )
    parser.add_argument(
        "--testing", action="store_const", const=True, default=None, help="Run in testing mode."
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument(
        "--reset-state",
        action="store_true",
        help="Delete the persisted heartbeat record and exit.",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Start only if the agent was running before (for boot hooks).",
    )
    return parser


def main() -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, and run
    the agent until SIGINT/SIGTERM.

    Raises:
        SystemExit: If configuration is invalid (code 2), dependencies are missing, or
            fatal errors occur during startup (code 1).

    Example:
        $ cell-audit-agent --attachment-path /run/modem/cells.json --fix-path /run/gps/fix.json
    """
    parser = build_parser()
    args = parser.parse_args()

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    cli_args = vars(args)
    reset = cli_args.pop("reset_state", False)
    resume = cli_args.pop("resume", False)

    try:
        config = load_config(cli_args)
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.stderr.write(f"Configuration Error: {e}\n")
        sys.exit(2)
    except Exception as e:
        sys.exit(f"Startup Error: {e}")

    if reset:
        reset_state(JsonFileStore(config.state_path))
        return

    if resume and not service_requested(JsonFileStore(config.state_path)):
        logger.info("Agent was not running before; --resume has nothing to do.")
        return

    logger.info(f"Starting cell-audit-agent v{__version__} (PID: {os.getpid()})...")
    logger.info(f"Event log: {config.event_log_path}")

    agent: Optional[Agent] = None
    resource_timer: Optional[threading.Timer] = None

    def cleanup() -> None:
        """Cancel the resource timer, log final usage and stop the agent.

        Registered via `atexit`; exceptions are logged, never raised.
        """
        nonlocal resource_timer
        if resource_timer:
            resource_timer.cancel()
            resource_timer = None

        log_resource_usage(agent)

        if agent:
            try:
                agent.stop()
            except Exception as e:
                logger.error(f"Error stopping agent in cleanup: {e}")

    atexit.register(cleanup)

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        agent = Agent(config)
        agent.start()

        if resource:
            logger.info("Resource usage monitoring enabled.")
        else:
            logger.warning("Resource usage monitoring not available (resource module missing).")

        log_resource_usage(agent)

        def run_resource_log() -> None:
            """Log resource usage and reschedule while the agent runs."""
            nonlocal resource_timer
            if stop_event.is_set():
                return
            try:
                log_resource_usage(agent)
            except Exception as e:
                logger.error(f"Error logging resource usage: {e}")
            finally:
                if not stop_event.is_set():
                    resource_timer = threading.Timer(60.0, run_resource_log)
                    resource_timer.daemon = True
                    resource_timer.start()

        resource_timer = threading.Timer(60.0, run_resource_log)
        resource_timer.daemon = True
        resource_timer.start()

        stop_event.wait()

    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
