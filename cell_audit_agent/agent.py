"""Agent orchestration.

Wires the sources, the sinks, the persistent store and the two timers to the
:class:`Sampler` and the :class:`HeartbeatManager`, and owns the start/stop
lifecycle. Collaborators can be injected, which is how the tests and the
``--testing`` mode run without files or an ActivityWatch server.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from cell_audit_agent.aw_sink import ActivityWatchSink
from cell_audit_agent.config import Config
from cell_audit_agent.dedup import DedupFilter
from cell_audit_agent.heartbeat import HeartbeatManager, WatchdogPolicy
from cell_audit_agent.models import LifecycleEvent, Observation, Source
from cell_audit_agent.sampler import Sampler
from cell_audit_agent.sink import CompositeSink, CsvEventLog, EventLogSink, safe_append
from cell_audit_agent.sources import AttachmentSource, FixSource, select_sources
from cell_audit_agent.status import FileStatusDisplay, LogStatusDisplay, MultiStatusDisplay, StatusDisplay
from cell_audit_agent.store import KEY_SERVICE_REQUESTED, JsonFileStore, KeyValueStore
from cell_audit_agent.timers import RecurringTimer, ThreadingWakeTimer, WakeTimer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Agent", "build_sink", "build_status", "service_requested", "reset_state"]


def build_sink(config: Config) -> EventLogSink:
    """Return the CSV log, fanned out to ActivityWatch when enabled."""
    csv_log = CsvEventLog(config.event_log_path)
    if not config.activitywatch:
        return csv_log
    mirror = ActivityWatchSink(port=config.port, testing=config.testing)
    mirror.wait_for_start(timeout=5.0)
    try:
        mirror.ensure_bucket()
    except Exception as e:
        logger.warning(f"Could not ensure bucket (proceeding in offline/queued mode): {e}")
    return CompositeSink([csv_log, mirror])


def build_status(config: Config) -> StatusDisplay:
    displays: List[StatusDisplay] = [LogStatusDisplay()]
    if config.status_file:
        displays.append(FileStatusDisplay(config.status_file))
    return MultiStatusDisplay(displays)


def service_requested(store: KeyValueStore) -> bool:
    """Return True if the agent was started and not reset since."""
    return store.get(KEY_SERVICE_REQUESTED) is True


def reset_state(store: KeyValueStore) -> None:
    """Delete the heartbeat record and the run intent."""
    store.clear()
    logger.info("Persisted state cleared.")


class Agent:
    """Long-running sampling agent.

    Attributes:
        config (Config): Resolved configuration.
        store (KeyValueStore): Persistent state.
        sink (EventLogSink): Event log.
        sampler (Sampler): Owns both input modes.
        manager (HeartbeatManager): Owns liveness and the wake timer.
        cadence (RecurringTimer): Drives ``Sampler.run_periodic_fix``.
    """

    def __init__(
        self,
        config: Config,
        sink: Optional[EventLogSink] = None,
        store: Optional[KeyValueStore] = None,
        attachment_source: Optional[AttachmentSource] = None,
        fix_source: Optional[FixSource] = None,
        wake_timer: Optional[WakeTimer] = None,
        status: Optional[StatusDisplay] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.clock = clock
        self.store = store if store is not None else JsonFileStore(config.state_path)
        self.sink = sink if sink is not None else build_sink(config)
        self.status = status if status is not None else build_status(config)

        if attachment_source is None or fix_source is None:
            default_attachment, default_fix = select_sources(config.attachment_path, config.fix_path)
            attachment_source = attachment_source or default_attachment
            fix_source = fix_source or default_fix
        self.attachment_source = attachment_source
        self.fix_source = fix_source

        self.sampler = Sampler(
            self.sink,
            self.fix_source,
            self.attachment_source,
            dedup=DedupFilter(config.debounce_seconds),
            status=self.status,
            clock=clock,
            fix_timeout=config.fix_timeout,
            attachment_heartbeat=config.attachment_heartbeat,
        )
        policy = WatchdogPolicy(
            nominal_interval=config.fix_interval,
            resurrection_timeout=config.resurrection_timeout,
            max_fix_age=config.max_fix_age,
            stale_wake_fraction=config.stale_wake_fraction,
            backoff_base=config.backoff_base,
            backoff_multiplier=config.backoff_multiplier,
            backoff_min=config.backoff_min,
            backoff_max=config.backoff_max,
            heartbeat_coalesce=config.heartbeat_coalesce,
        )
        self.wake_timer = wake_timer if wake_timer is not None else ThreadingWakeTimer(clock=clock)
        self.manager = HeartbeatManager(
            self.store,
            self.wake_timer,
            self.sampler,
            self.sink,
            policy=policy,
            status=self.status,
            clock=clock,
        )
        self.cadence = RecurringTimer(config.fix_interval, self.sampler.run_periodic_fix, name="FixCadence")

        self._lock = threading.Lock()
        self._running = False
        self.start_time: Optional[float] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def _emit(self, event: LifecycleEvent, note: Optional[str] = None) -> None:
        safe_append(self.sink, Observation.lifecycle(event, self.clock(), Source.AGENT, note))

    def start(self) -> None:
        """Record the run intent, recover the watchdog and start sampling."""
        with self._lock:
            if self._running:
                return
            self._running = True
        self.start_time = time.monotonic()

        try:
            self.store.set(KEY_SERVICE_REQUESTED, True)
        except Exception as e:
            logger.error(f"Failed to persist run intent: {e}")

        self._emit(
            LifecycleEvent.STARTED,
            f"pid={os.getpid()}, attachment={self.attachment_source.tier}, fix={self.fix_source.tier}",
        )
        self.manager.start()

        registered = self.sampler.register_listener()
        self._emit(LifecycleEvent.LISTENER_REGISTERED, "ok" if registered else "source unavailable")

        self.cadence.start()
        logger.info(
            f"Sampling started: fix every {self.config.fix_interval:.0f}s "
            f"(timeout {self.config.fix_timeout:.0f}s), dedup {self.config.debounce_seconds:.1f}s"
        )

    def stop(self) -> None:
        """Stop timers and sources, then close the sink. Safe to call twice."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        self.cadence.stop()
        self.sampler.unregister_listener()
        self.manager.stop()
        try:
            self.fix_source.close()
        except Exception as e:
            logger.error(f"Error closing fix source: {e}")
        self._emit(LifecycleEvent.STOPPED, f"pid={os.getpid()}")
        try:
            self.sink.close()
        except Exception as e:
            logger.error(f"Error closing event log: {e}")
        logger.info("Agent stopped.")

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        stats.update(self.sampler.get_statistics())
        stats.update(self.manager.get_statistics())
        stats["uptime"] = time.monotonic() - self.start_time if self.start_time is not None else 0.0
        stats["cadence_runs"] = self.cadence.runs
        return stats

    def __repr__(self) -> str:
        return f"<Agent running={self._running} data_dir={self.config.data_dir}>"
