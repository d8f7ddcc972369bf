"""Heartbeat and watchdog manager.

Responsibility:
    Keep a persisted liveness record, keep exactly one wake timer armed, and
    resurrect sampling when the timer fires without a fresh heartbeat.

State machine (``WatchdogMode``):
    - ``HEALTHY``: timer armed one nominal interval after the last heartbeat.
    - ``SUSPECT``: timer fired, one resurrection attempt in flight.
    - ``BACKOFF``: resurrection failed ``n`` times, timer armed at backoff(n).

Concurrency:
    Every transition runs under one re-entrant lock. The only blocking step,
    the resurrection fix request, runs with the lock released; its outcome
    is applied under the lock again and is discarded if a fresher heartbeat
    won the race in the meantime.

Key Invariants:
    - At most one wake timer is armed. ``arm`` is a no-op while
      ``watchdog_scheduled_at`` lies strictly in the future.
    - ``backoff_count`` grows only on consecutive resurrection failures and
      returns to 0 on the next heartbeat.
    - Only one resurrection attempt exists at a time.
    - Every transition is written to the event log as a lifecycle row.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

from cell_audit_agent.errors import WakeTimerError
from cell_audit_agent.models import HeartbeatState, LifecycleEvent, Observation, ObservationKind, Source
from cell_audit_agent.sampler import Sampler
from cell_audit_agent.sink import EventLogSink, safe_append
from cell_audit_agent.status import StatusDisplay, safe_show
from cell_audit_agent.store import KeyValueStore, load_heartbeat_state, save_heartbeat_state
from cell_audit_agent.timers import WakeTimer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["WatchdogMode", "WatchdogPolicy", "HeartbeatManager", "backoff_delay"]

# Deliveries this much ahead of the recorded deadline belong to a superseded timer
WAKE_TOLERANCE_SECONDS = 1.0


class WatchdogMode(str, enum.Enum):
    HEALTHY = "healthy"
    SUSPECT = "suspect"
    BACKOFF = "backoff"


def backoff_delay(n: int, base: float, multiplier: float, min_delay: float, max_delay: float) -> float:
    """Return ``clamp(base * multiplier**n, min_delay, max_delay)``.

    Example:
        >>> backoff_delay(1, 300.0, 2.0, 1800.0, 21600.0)
        1800.0
        >>> backoff_delay(3, 300.0, 2.0, 1800.0, 21600.0)
        2400.0
    """
    try:
        raw = base * (multiplier ** n)
    except OverflowError:
        raw = max_delay
    return float(min(max(raw, min_delay), max_delay))


@dataclass(frozen=True)
class WatchdogPolicy:
    """Timing policy. Every value is configuration, none is hard-coded.

    Attributes:
        nominal_interval (float): Expected spacing of heartbeats, in seconds.
        resurrection_timeout (float): Bound on the one-shot resurrection fix.
        max_fix_age (float): Oldest fix a resurrection accepts.
        stale_wake_fraction (float): A wake within this fraction of the
            nominal interval after a heartbeat is treated as spurious.
        backoff_base (Optional[float]): Base delay; defaults to ``nominal_interval``.
        backoff_multiplier (float): Growth factor per consecutive failure.
        backoff_min (float): Floor of the backoff delay.
        backoff_max (float): Ceiling of the backoff delay.
        heartbeat_coalesce (float): Heartbeats closer than this to the
            previous one only refresh the timestamp instead of re-arming.
    """

    nominal_interval: float = 300.0
    resurrection_timeout: float = 30.0
    max_fix_age: float = 120.0
    stale_wake_fraction: float = 0.5
    backoff_base: Optional[float] = None
    backoff_multiplier: float = 2.0
    backoff_min: float = 1800.0
    backoff_max: float = 21600.0
    heartbeat_coalesce: float = 30.0

    def __post_init__(self) -> None:
        if self.nominal_interval <= 0:
            raise ValueError(f"nominal_interval must be positive, got {self.nominal_interval}")
        if self.resurrection_timeout <= 0:
            raise ValueError(f"resurrection_timeout must be positive, got {self.resurrection_timeout}")
        if self.max_fix_age <= 0:
            raise ValueError(f"max_fix_age must be positive, got {self.max_fix_age}")
        if not (0.0 <= self.stale_wake_fraction < 1.0):
            raise ValueError(f"stale_wake_fraction must be in [0, 1), got {self.stale_wake_fraction}")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if self.backoff_min < 0 or self.backoff_max <= 0 or self.backoff_min > self.backoff_max:
            raise ValueError(f"invalid backoff bounds: min={self.backoff_min}, max={self.backoff_max}")
        if self.heartbeat_coalesce < 0:
            raise ValueError(f"heartbeat_coalesce must be non-negative, got {self.heartbeat_coalesce}")

    def delay_for(self, n: int) -> float:
        base = self.backoff_base if self.backoff_base is not None else self.nominal_interval
        return backoff_delay(n, base, self.backoff_multiplier, self.backoff_min, self.backoff_max)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _as_wake_timer_error(error: Exception) -> WakeTimerError:
    if isinstance(error, WakeTimerError):
        return error
    wrapped = WakeTimerError(f"{type(error).__name__}: {error}")
    wrapped.__cause__ = error
    return wrapped


class HeartbeatManager:
    """Own the heartbeat record and the wake timer.

    The manager subscribes itself to the sampler's heartbeats and to the
    wake timer's callback at construction.

    Attributes:
        store (KeyValueStore): Durable home of the heartbeat record.
        wake_timer (WakeTimer): Single-slot timer service.
        sampler (Sampler): Used for the resurrection fix and listener re-registration.
        sink (EventLogSink): Receives one lifecycle row per transition.
        policy (WatchdogPolicy): Timing policy.
    """

    def __init__(
        self,
        store: KeyValueStore,
        wake_timer: WakeTimer,
        sampler: Sampler,
        sink: EventLogSink,
        policy: Optional[WatchdogPolicy] = None,
        status: Optional[StatusDisplay] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.wake_timer = wake_timer
        self.sampler = sampler
        self.sink = sink
        self.policy = policy or WatchdogPolicy()
        self.status = status
        self.clock = clock

        self._lock = threading.RLock()
        self._state = HeartbeatState()
        self._mode = WatchdogMode.HEALTHY
        self._resurrecting = False
        self._heartbeat_during_resurrection = False
        self._last_lifecycle_ts: Optional[float] = None
        self._started = False

        # Metrics
        self.arm_history: Deque[float] = deque(maxlen=100)
        self.resurrections = 0
        self.resurrection_failures = 0
        self.stale_wakes = 0
        self.arm_failures = 0

        self.wake_timer.set_callback(self.on_wake)
        self.sampler.set_heartbeat_listener(self.record_heartbeat)

    @property
    def state(self) -> HeartbeatState:
        with self._lock:
            return replace(self._state)

    @property
    def mode(self) -> WatchdogMode:
        with self._lock:
            return self._mode

    @property
    def resurrecting(self) -> bool:
        with self._lock:
            return self._resurrecting

    def _emit(self, event: LifecycleEvent, note: Optional[str] = None) -> None:
        ts = self.clock()
        if self._last_lifecycle_ts is not None and ts < self._last_lifecycle_ts:
            ts = self._last_lifecycle_ts
        self._last_lifecycle_ts = ts
        if note:
            logger.info("Watchdog %s: %s", event.value, note)
        else:
            logger.info("Watchdog %s", event.value)
        safe_append(self.sink, Observation.lifecycle(event, ts, Source.WATCHDOG, note))

    def _persist(self) -> None:
        try:
            save_heartbeat_state(self.store, self._state)
        except Exception as e:
            logger.error("Failed to persist heartbeat state: %s", e)

    def arm(self, at: float, event: LifecycleEvent = LifecycleEvent.SCHEDULED, note: Optional[str] = None) -> bool:
        """Arm the wake timer at ``at`` unless one is pending in the future.

        Returns:
            bool: True if a timer was armed by this call.
        """
        with self._lock:
            now = self.clock()
            scheduled = self._state.watchdog_scheduled_at
            if scheduled is not None and scheduled > now:
                logger.debug("Wake timer already armed for %s; not arming %s", _iso(scheduled), _iso(at))
                return False
            try:
                self.wake_timer.arm(at)
            except Exception as e:
                self._arm_failed(_as_wake_timer_error(e))
                return False
            self._state.watchdog_scheduled_at = at
            self._persist()
            self.arm_history.append(at)
            detail = f"at {_iso(at)} (+{max(0.0, at - now):.0f}s)"
            self._emit(event, f"{detail}; {note}" if note else detail)
            return True

    def _arm_failed(self, error: WakeTimerError) -> None:
        self.arm_failures += 1
        logger.critical("Failed to arm wake timer: %s. Sampling cannot self-heal until it is re-armed.", error)
        self._emit(LifecycleEvent.ARM_FAILED, str(error))
        safe_show(self.status, "WARNING: wake timer could not be armed; restart the agent")

    def _disarm(self, emit: bool = True) -> None:
        with self._lock:
            previous = self._state.watchdog_scheduled_at
            self._state.watchdog_scheduled_at = None
            self._persist()
            try:
                self.wake_timer.cancel()
            except Exception as e:
                logger.warning("Failed to cancel wake timer: %s", e)
            if emit and previous is not None:
                self._emit(LifecycleEvent.CANCELLED, f"was due {_iso(previous)}")

    def disarm(self) -> None:
        """Clear the pending wake timer."""
        self._disarm(emit=True)

    def start(self) -> None:
        """Load the persisted record and restore or trigger the wake timer.

        A persisted deadline still in the future is re-armed as is. A
        deadline that passed while the process was dead, or a heartbeat older
        than the nominal interval, triggers an immediate wake.
        """
        with self._lock:
            self._state = load_heartbeat_state(self.store)
            self._started = True
            now = self.clock()
            nominal = self.policy.nominal_interval
            state = self._state
            self._mode = WatchdogMode.BACKOFF if state.backoff_count > 0 else WatchdogMode.HEALTHY

            if state.is_empty:
                logger.info("No prior heartbeat found. First start.")
                self.arm(now + nominal, note="first start")
                return

            last = state.last_heartbeat_at
            if last is not None:
                self._emit(LifecycleEvent.RESTARTED, f"last heartbeat {now - last:.0f}s ago, backoff {state.backoff_count}")
            else:
                self._emit(LifecycleEvent.RESTARTED, f"no heartbeat on record, backoff {state.backoff_count}")

            scheduled = state.watchdog_scheduled_at
            if scheduled is not None and scheduled > now:
                try:
                    self.wake_timer.arm(scheduled)
                except Exception as e:
                    self._state.watchdog_scheduled_at = None
                    self._persist()
                    self._arm_failed(_as_wake_timer_error(e))
                    return
                self.arm_history.append(scheduled)
                self._emit(LifecycleEvent.SCHEDULED, f"at {_iso(scheduled)} (+{scheduled - now:.0f}s); restored")
                return

            overdue = scheduled is not None or last is None or (now - last) >= nominal
            if overdue:
                self._state.watchdog_scheduled_at = None
                self._persist()
                self.arm(now, note="overdue at startup")
            else:
                self.arm(last + nominal, note="restored from last heartbeat")

    def stop(self) -> None:
        """Stop the live timer. The persisted record is kept for the next start."""
        with self._lock:
            self._started = False
        try:
            self.wake_timer.stop()
        except Exception as e:
            logger.warning("Failed to stop wake timer: %s", e)

    def record_heartbeat(self, at: Optional[float] = None) -> None:
        """Record a liveness signal and push the wake timer out.

        Resets the backoff count and re-arms at ``at + nominal_interval``.
        Heartbeats within ``heartbeat_coalesce`` of the previous one in
        ``HEALTHY`` only refresh the timestamp and leave the timer early; a
        wake before ``last + nominal_interval`` is treated as stale and
        re-arms there. Safe to call redundantly.
        """
        with self._lock:
            if at is None:
                at = self.clock()
            previous = self._state.last_heartbeat_at
            if previous is not None and at < previous:
                at = previous
            self._state.last_heartbeat_at = at
            if self._resurrecting:
                self._heartbeat_during_resurrection = True
            recovering = self._mode is not WatchdogMode.HEALTHY or self._state.backoff_count > 0
            self._state.backoff_count = 0

            scheduled = self._state.watchdog_scheduled_at
            if (
                not recovering
                and previous is not None
                and scheduled is not None
                and scheduled > self.clock()
                and (at - previous) < self.policy.heartbeat_coalesce
            ):
                self._persist()
                return

            if recovering:
                logger.info("Heartbeat received; leaving %s.", self._mode.value)
            self._mode = WatchdogMode.HEALTHY
            self._disarm(emit=False)
            self.arm(at + self.policy.nominal_interval, note="heartbeat")

    def on_wake(self) -> None:
        """Handle one wake timer delivery.

        Spurious deliveries are ignored: a superseded timer, a wake before a
        full nominal interval has passed since the last heartbeat, or a
        heartbeat within ``stale_wake_fraction`` of the nominal interval.
        Otherwise one resurrection attempt runs. Deliveries after ``stop``
        are dropped.
        """
        with self._lock:
            if not self._started:
                logger.debug("Wake after stop. Ignoring.")
                return
            now = self.clock()
            scheduled = self._state.watchdog_scheduled_at
            if scheduled is not None and scheduled > now + WAKE_TOLERANCE_SECONDS:
                self.stale_wakes += 1
                self._emit(LifecycleEvent.STALE_WAKE_IGNORED, f"timer now due {_iso(scheduled)}")
                return

            last = self._state.last_heartbeat_at
            nominal = self.policy.nominal_interval
            stale_window = self.policy.stale_wake_fraction * nominal
            early = last is not None and now < last + nominal - WAKE_TOLERANCE_SECONDS
            if last is not None and ((now - last) < stale_window or early):
                self.stale_wakes += 1
                self._state.watchdog_scheduled_at = None
                self._persist()
                self._emit(LifecycleEvent.STALE_WAKE_IGNORED, f"heartbeat {now - last:.0f}s ago")
                self._mode = WatchdogMode.HEALTHY
                self.arm(last + nominal, note="after stale wake")
                return

            if self._resurrecting:
                logger.debug("Wake while a resurrection is in flight. Ignoring.")
                return

            # The timer that fired is no longer pending
            self._state.watchdog_scheduled_at = None
            self._persist()
            self._mode = WatchdogMode.SUSPECT
            self._resurrecting = True
            self._heartbeat_during_resurrection = False
            silent = f"{now - last:.0f}s since last heartbeat" if last is not None else "no heartbeat on record"
            self._emit(LifecycleEvent.SUSPECT_ENTERED, f"{silent}, backoff {self._state.backoff_count}")
            safe_show(self.status, "Watchdog: resurrecting sampling...")

        try:
            self._resurrect()
        except Exception as e:
            # Never leave the manager stuck in SUSPECT without a timer
            logger.error("Resurrection crashed: %s", e, exc_info=True)
            with self._lock:
                self._resurrecting = False
                self._apply_failure(f"error: {type(e).__name__}: {e}")

    def _resurrect(self) -> None:
        registered = self.sampler.register_listener()
        with self._lock:
            self._emit(LifecycleEvent.LISTENER_REGISTERED, "ok" if registered else "source unavailable")

        observation = self.sampler.request_one_shot(self.policy.resurrection_timeout, self.policy.max_fix_age)

        with self._lock:
            self._resurrecting = False
            self.resurrections += 1
            if observation.kind is ObservationKind.FIX_SUCCEEDED:
                self._emit(LifecycleEvent.RESURRECTION_SUCCESS, f"latency {observation.latency or 0.0:.3f}s")
                self.record_heartbeat(observation.timestamp)
                return
            self._apply_failure(observation.detail or "failed")

    def _apply_failure(self, reason: str) -> None:
        if self._heartbeat_during_resurrection:
            self._emit(LifecycleEvent.RESURRECTION_FAILED, f"{reason}; superseded by fresher heartbeat")
            return

        self.resurrection_failures += 1
        self._state.backoff_count += 1
        n = self._state.backoff_count
        delay = self.policy.delay_for(n)
        self._mode = WatchdogMode.BACKOFF
        self._emit(LifecycleEvent.RESURRECTION_FAILED, f"{reason}; consecutive failures {n}")
        self._persist()
        if self.arm(self.clock() + delay, event=LifecycleEvent.BACKOFF_ARMED, note=f"backoff {n}"):
            safe_show(self.status, f"Watchdog: backoff {n}, next attempt in {delay / 60:.0f} min")

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "mode": self._mode.value,
                "backoff_count": self._state.backoff_count,
                "last_heartbeat_at": self._state.last_heartbeat_at,
                "watchdog_scheduled_at": self._state.watchdog_scheduled_at,
                "resurrections": self.resurrections,
                "resurrection_failures": self.resurrection_failures,
                "stale_wakes": self.stale_wakes,
                "arm_failures": self.arm_failures,
            }

    def __repr__(self) -> str:
        return f"<HeartbeatManager mode={self._mode.value} backoff={self._state.backoff_count}>"
