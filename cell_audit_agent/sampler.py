"""Sampler: owns the two input modes.

- Attachment change events arrive on the source's callback thread, go
  through the dedup filter and become ``AttachmentChanged`` rows.
- Periodic fixes run on the cadence timer thread, one at a time, each
  bounded by a timeout that keeps it clear of the next cycle.

Every issued fix request ends in exactly one terminal observation:
``FixSucceeded`` or ``FixFailed``. A success is followed by one
``AttachmentAudit`` row per cell of the last batch, pinning each visible
cell to the position.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from cell_audit_agent.dedup import DedupFilter
from cell_audit_agent.errors import RequestTimeout, SourceUnavailable, StaleResult
from cell_audit_agent.models import (
    AttachmentCandidate,
    Fix,
    Observation,
    ObservationKind,
    Source,
)
from cell_audit_agent.sink import EventLogSink, safe_append
from cell_audit_agent.sources import AttachmentSource, FixSource
from cell_audit_agent.status import StatusDisplay, safe_show

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Sampler", "DEFAULT_FIX_TIMEOUT"]

DEFAULT_FIX_TIMEOUT = 240.0

HeartbeatListener = Callable[[float], None]


class Sampler:
    """Turn source callbacks and fix requests into observations.

    Attributes:
        sink (EventLogSink): Where observations go.
        fix_source (FixSource): Answers position requests.
        attachment_source (AttachmentSource): Delivers cell batches.
        dedup (DedupFilter): Drops repeated serving-cell reports.
        fix_timeout (float): Bound on a periodic request, in seconds.
        attachment_heartbeat (bool): Whether a batch with a serving cell
            counts as a liveness signal.
    """

    def __init__(
        self,
        sink: EventLogSink,
        fix_source: FixSource,
        attachment_source: AttachmentSource,
        dedup: Optional[DedupFilter] = None,
        status: Optional[StatusDisplay] = None,
        clock: Callable[[], float] = time.time,
        fix_timeout: float = DEFAULT_FIX_TIMEOUT,
        attachment_heartbeat: bool = True,
    ) -> None:
        if fix_timeout <= 0:
            raise ValueError(f"fix_timeout must be positive, got {fix_timeout}")
        self.sink = sink
        self.fix_source = fix_source
        self.attachment_source = attachment_source
        self.dedup = dedup or DedupFilter()
        self.status = status
        self.clock = clock
        self.fix_timeout = fix_timeout
        self.attachment_heartbeat = attachment_heartbeat

        self._heartbeat_listener: Optional[HeartbeatListener] = None
        self._lock = threading.Lock()
        self._running = False
        self._last_timestamps: Dict[Source, float] = {}
        self._last_primary: Optional[AttachmentCandidate] = None
        self._last_batch: List[AttachmentCandidate] = []
        self.last_fix_status = "Starting..."

        # Metrics
        self.attachment_events = 0
        self.attachment_rows = 0
        self.fixes_requested = 0
        self.fixes_succeeded = 0
        self.fixes_failed = 0
        self.fixes_skipped = 0
        self.audit_rows = 0

    def set_heartbeat_listener(self, listener: Optional[HeartbeatListener]) -> None:
        self._heartbeat_listener = listener

    @property
    def fix_in_flight(self) -> bool:
        with self._lock:
            return self._running

    @property
    def last_primary(self) -> Optional[AttachmentCandidate]:
        with self._lock:
            return self._last_primary

    @property
    def last_batch(self) -> List[AttachmentCandidate]:
        with self._lock:
            return list(self._last_batch)

    def _stamp(self, source: Source) -> float:
        """Return a timestamp that never goes backwards for ``source``."""
        now = self.clock()
        with self._lock:
            last = self._last_timestamps.get(source)
            if last is not None and now < last:
                now = last
            self._last_timestamps[source] = now
        return now

    def _report_heartbeat(self, at: float) -> None:
        listener = self._heartbeat_listener
        if listener is None:
            return
        try:
            listener(at)
        except Exception:
            logger.error("Heartbeat listener failed", exc_info=True)

    def _update_status(self) -> None:
        primary = self.last_primary
        cell = primary.identifier if primary else "N/A"
        safe_show(self.status, f"Cell: {cell} | Last fix: {self.last_fix_status}")

    def register_listener(self) -> bool:
        """Register for attachment changes. Returns False if the source is unavailable."""
        try:
            self.attachment_source.register(self.on_attachment_event)
            return True
        except SourceUnavailable as e:
            logger.warning("Attachment source unavailable: %s", e)
        except Exception as e:
            logger.error("Failed to register attachment listener: %s", e, exc_info=True)
        return False

    def unregister_listener(self) -> None:
        try:
            self.attachment_source.unregister()
        except Exception as e:
            logger.error("Failed to unregister attachment listener: %s", e)

    def on_attachment_event(self, candidates: List[AttachmentCandidate]) -> None:
        """Handle one batch from the attachment source.

        Without a primary entry the batch is ignored. A new serving cell
        that passes the dedup filter produces one row per candidate, all
        sharing the batch timestamp.

        Args:
            candidates (List[AttachmentCandidate]): The cells in this batch.
        """
        primary = next((c for c in candidates if c.is_primary), None)
        if primary is None:
            logger.debug("Attachment batch without a serving cell (%d entries). Ignoring.", len(candidates))
            return

        ts = self._stamp(Source.ATTACHMENT)
        with self._lock:
            self.attachment_events += 1
            self._last_primary = primary
            self._last_batch = list(candidates)

        if self.dedup.offer(Source.ATTACHMENT, primary.identifier, ts):
            logger.info("Serving cell changed: %s (%d cells visible)", primary.identifier, len(candidates))
            for candidate in candidates:
                observation = Observation(
                    kind=ObservationKind.ATTACHMENT_CHANGED,
                    timestamp=ts,
                    source=Source.ATTACHMENT,
                    identifier=candidate.identifier,
                    area=candidate.area,
                    quality=candidate.quality,
                    is_primary=candidate.is_primary,
                )
                if safe_append(self.sink, observation):
                    self.attachment_rows += 1
            self._update_status()

        if self.attachment_heartbeat:
            self._report_heartbeat(ts)

    def run_periodic_fix(self) -> Optional[Observation]:
        """Issue the scheduled fix request.

        Returns:
            Optional[Observation]: The terminal observation, or None if a
            request was already in flight and this cycle was skipped.
        """
        with self._lock:
            if self._running:
                self.fixes_skipped += 1
                logger.warning("Previous fix still in flight. Skipping this cycle.")
                return None
            self._running = True
        try:
            observation = self._request(self.fix_timeout, max_age=None)
        finally:
            with self._lock:
                self._running = False

        if observation.kind is ObservationKind.FIX_SUCCEEDED:
            self._report_heartbeat(observation.timestamp)
        return observation

    def request_one_shot(self, timeout: float, max_age: Optional[float]) -> Observation:
        """Issue one bounded request outside the cadence (used by resurrection).

        The caller decides what the outcome means for liveness; no heartbeat
        is reported from here.
        """
        return self._request(timeout, max_age=max_age)

    def _request(self, timeout: float, max_age: Optional[float]) -> Observation:
        self.fixes_requested += 1
        self.last_fix_status = "Searching..."
        self._update_status()

        cancel = threading.Event()
        # Cancel the underlying request when the bound elapses, even if the source ignores its timeout
        guard = threading.Timer(timeout, cancel.set)
        guard.daemon = True
        guard.start()

        requested_at = self.clock()
        start = time.monotonic()
        fix: Optional[Fix] = None
        reason: Optional[str] = None
        try:
            fix = self.fix_source.request(timeout, cancel)
            if cancel.is_set():
                raise RequestTimeout(timeout)
            if fix is None:
                reason = "no fix"
            elif max_age is not None:
                age = fix.age(self.clock())
                if age > max_age:
                    raise StaleResult(age, max_age)
        except RequestTimeout:
            reason = "timeout"
        except StaleResult as e:
            reason = f"stale: {e}"
        except SourceUnavailable as e:
            reason = f"unavailable: {e}"
        except Exception as e:
            logger.error("Fix request failed unexpectedly: %s", e, exc_info=True)
            reason = f"error: {type(e).__name__}: {e}"
        finally:
            guard.cancel()

        elapsed = time.monotonic() - start
        ts = self._stamp(Source.FIX)
        if reason is None and fix is not None:
            primary = self.last_primary
            observation = Observation(
                kind=ObservationKind.FIX_SUCCEEDED,
                timestamp=ts,
                source=Source.FIX,
                identifier=primary.identifier if primary else None,
                area=primary.area if primary else None,
                quality=primary.quality if primary else None,
                is_primary=True if primary else None,
                latency=max(0.0, ts - requested_at),
            ).with_fix(fix)
            self.fixes_succeeded += 1
            self.last_fix_status = f"{int(round(observation.latency * 1000))} ms"
            logger.info("Fix succeeded in %.3fs (accuracy %s)", observation.latency, fix.accuracy)
        else:
            observation = Observation(
                kind=ObservationKind.FIX_FAILED,
                timestamp=ts,
                source=Source.FIX,
                latency=elapsed,
                detail=reason,
            )
            if fix is not None:
                # Answered late: keep the position so it differs from "no answer"
                observation = observation.with_fix(fix)
            self.fixes_failed += 1
            if reason == "timeout":
                self.last_fix_status = "Timeout"
            elif reason and reason.startswith("stale"):
                self.last_fix_status = "Stale"
            else:
                self.last_fix_status = "Failed"
            logger.warning("Fix failed: %s", reason)

        safe_append(self.sink, observation)
        if observation.kind is ObservationKind.FIX_SUCCEEDED:
            self._write_audit(observation)
        self._update_status()
        return observation

    def _write_audit(self, fix_observation: Observation) -> None:
        for candidate in self.last_batch:
            observation = replace(
                fix_observation,
                kind=ObservationKind.ATTACHMENT_AUDIT,
                identifier=candidate.identifier,
                area=candidate.area,
                quality=candidate.quality,
                is_primary=candidate.is_primary,
            )
            if safe_append(self.sink, observation):
                self.audit_rows += 1

    def get_statistics(self) -> Dict[str, int]:
        return {
            "attachment_events": self.attachment_events,
            "attachment_rows": self.attachment_rows,
            "fixes_requested": self.fixes_requested,
            "fixes_succeeded": self.fixes_succeeded,
            "fixes_failed": self.fixes_failed,
            "fixes_skipped": self.fixes_skipped,
            "audit_rows": self.audit_rows,
            "dedup_rejected": self.dedup.rejected,
        }

    def __repr__(self) -> str:
        return f"<Sampler fix_timeout={self.fix_timeout} in_flight={self._running}>"
