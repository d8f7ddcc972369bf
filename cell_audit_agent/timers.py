"""Timer primitives: the single-slot wake timer and the fix cadence timer.

Both timers own one daemon thread parked on a :class:`threading.Condition`,
so re-arming moves the deadline instead of spawning a new thread.

Key Invariants:
    - A :class:`ThreadingWakeTimer` holds at most one pending deadline.
      ``arm`` replaces it; ``cancel`` clears it.
    - Each successful ``arm`` produces at most one callback.
    - Callback exceptions are logged and never kill the timer thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from cell_audit_agent.errors import WakeTimerError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["WakeTimer", "ThreadingWakeTimer", "RecurringTimer"]


class WakeTimer:
    """Wake timer service contract.

    ``arm(at)`` schedules one callback at the absolute epoch time ``at``;
    ``cancel()`` withdraws it. Delivery may be late or duplicated by the
    platform, which the heartbeat manager tolerates.
    """

    def set_callback(self, callback: Callable[[], None]) -> None:
        raise NotImplementedError

    def arm(self, at: float) -> None:
        """Raises :class:`WakeTimerError` when the deadline cannot be scheduled."""
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        self.cancel()


class ThreadingWakeTimer(WakeTimer):
    """In-process wake timer backed by one condition-variable thread.

    Attributes:
        clock (Callable[[], float]): Wall clock used to turn absolute deadlines into waits.
    """

    __slots__ = ("clock", "_callback", "_condition", "_target_time", "_active", "_stopped", "_thread", "fired")

    def __init__(self, callback: Optional[Callable[[], None]] = None, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._callback = callback
        self._condition = threading.Condition()
        self._target_time: Optional[float] = None
        self._active = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        self.fired = 0

    def set_callback(self, callback: Callable[[], None]) -> None:
        with self._condition:
            self._callback = callback

    @property
    def deadline(self) -> Optional[float]:
        with self._condition:
            return self._target_time

    def arm(self, at: float) -> None:
        """Schedule the callback at ``at``, replacing any pending deadline."""
        with self._condition:
            if self._stopped:
                return
            self._target_time = at
            if not self._active:
                self._active = True
                try:
                    self._start_thread()
                except RuntimeError as e:
                    self._target_time = None
                    raise WakeTimerError(f"Cannot start wake timer thread: {e}") from e
            else:
                self._condition.notify()

    def cancel(self) -> None:
        with self._condition:
            self._target_time = None
            self._condition.notify()

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._active = False
            self._target_time = None
            self._condition.notify_all()

    def _start_thread(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            try:
                self._thread = threading.Thread(target=self._run, name="WakeTimer", daemon=True)
                self._thread.start()
            except Exception:
                # Reset active state if thread fails to start to allow retries
                self._active = False
                self._thread = None
                raise

    def _run(self) -> None:
        with self._condition:
            while self._active and not self._stopped:
                if self._target_time is None:
                    self._condition.wait()
                    continue

                wait_time = self._target_time - self.clock()
                if wait_time > 0:
                    # Wall-clock jumps (suspend, NTP) are picked up on the next wake
                    self._condition.wait(min(wait_time, 60.0))
                    continue

                self._target_time = None
                callback = self._callback
                self.fired += 1
                self._condition.release()
                try:
                    if callback is not None:
                        callback()
                except Exception:
                    logger.error("Error in wake timer callback", exc_info=True)
                finally:
                    self._condition.acquire()
            self._thread = None

    def __repr__(self) -> str:
        return f"<ThreadingWakeTimer deadline={self._target_time} active={self._active}>"


class RecurringTimer:
    """Run a callback on a fixed cadence.

    The schedule is fixed-rate without catch-up: the next run is one
    interval after the previous target, or immediately if that moment has
    already passed, so a wake from suspend triggers a single run instead of
    a burst.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], None],
        initial_delay: float = 0.0,
        name: str = "RecurringTimer",
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.callback = callback
        self.initial_delay = initial_delay
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        next_run = time.monotonic() + self.initial_delay
        while not self._stop_event.is_set():
            delay = next_run - time.monotonic()
            if delay > 0 and self._stop_event.wait(delay):
                break
            try:
                self.callback()
            except Exception:
                logger.error("Error in %s callback", self.name, exc_info=True)
            self.runs += 1
            next_run = max(next_run + self.interval, time.monotonic())

    def __repr__(self) -> str:
        return f"<RecurringTimer name={self.name} interval={self.interval}>"
