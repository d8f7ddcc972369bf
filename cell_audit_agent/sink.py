"""Append-only event log.

Any number of producers may call :meth:`EventLogSink.append`; physical writes
are serialized by a single lock per sink so that header creation and the row
write never interleave, and every row is flushed to disk before the lock is
released.

Key Invariants:
    - Rows are written in the order ``append`` acquired the lock.
    - The header is written exactly once, when the file is absent or empty.
    - A failed write raises :class:`SinkWriteFailure`; callers swallow it.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from cell_audit_agent.errors import SinkWriteFailure
from cell_audit_agent.models import Observation, ObservationKind

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "EventLogSink",
    "CsvEventLog",
    "CompositeSink",
    "MemorySink",
    "CSV_HEADER",
    "event_type_label",
    "safe_append",
]

CSV_HEADER: Sequence[str] = (
    "Timestamp",
    "Event_Type",
    "Source",
    "CID",
    "LAC_TAC",
    "Signal_dBm",
    "Primary",
    "Lat",
    "Lon",
    "Accuracy",
    "Latency_ms",
    "Detail",
)
MISSING = "N/A"


class EventLogSink:
    """Contract for the append-only log."""

    def append(self, observation: Observation) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


def event_type_label(observation: Observation) -> str:
    """Return the row label used in the CSV log.

    Attachment rows keep the handover/neighbour labels of the field logs so
    old and new files can be read side by side.
    """
    if observation.kind is ObservationKind.ATTACHMENT_CHANGED:
        return "SERVING_HANDOVER" if observation.is_primary else "NEIGHBOR_DETECTED"
    if observation.kind is ObservationKind.ATTACHMENT_AUDIT:
        return "AUDIT_SERVING" if observation.is_primary else "AUDIT_NEIGHBOR"
    if observation.kind is ObservationKind.FIX_SUCCEEDED:
        return "FIX_SUCCESS"
    if observation.kind is ObservationKind.FIX_FAILED:
        if observation.detail and observation.detail.startswith("stale"):
            return "FIX_STALE"
        return "LOCATION_FAILURE"
    return "LIFECYCLE"


def _fmt(value: object) -> str:
    if value is None:
        return MISSING
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_row(observation: Observation) -> List[str]:
    ts = datetime.fromtimestamp(observation.timestamp, tz=timezone.utc)
    latency_ms = None
    if observation.latency is not None:
        latency_ms = int(round(observation.latency * 1000))
    return [
        ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
        event_type_label(observation),
        observation.source.value,
        _fmt(observation.identifier),
        _fmt(observation.area),
        _fmt(observation.quality),
        _fmt(observation.is_primary),
        _fmt(observation.latitude),
        _fmt(observation.longitude),
        _fmt(observation.accuracy),
        _fmt(latency_ms),
        _fmt(observation.detail),
    ]


class CsvEventLog(EventLogSink):
    """CSV file sink with single-writer discipline.

    Attributes:
        path (Path): Location of the CSV file. The parent directory is created on demand.
    """

    def __init__(self, path: Union[str, Path], fsync: bool = True) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self._lock = threading.Lock()
        self.rows_written = 0

    def append(self, observation: Observation) -> None:
        """Append one observation, writing the header first if needed.

        Raises:
            SinkWriteFailure: If the file cannot be opened or written.
        """
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        row = format_row(observation)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8", newline="") as f:
                    if f.tell() == 0:
                        writer.writerow(CSV_HEADER)
                    writer.writerow(row)
                    f.write(buf.getvalue())
                    f.flush()
                    if self.fsync:
                        os.fsync(f.fileno())
                self.rows_written += 1
            except OSError as e:
                raise SinkWriteFailure(f"Failed to append to {self.path}: {e}") from e

    def __repr__(self) -> str:
        return f"<CsvEventLog path={self.path} rows={self.rows_written}>"


class CompositeSink(EventLogSink):
    """Fan an observation out to several sinks.

    The first sink is the primary log; a failure there is re-raised after the
    secondaries had their chance. Secondary failures are only logged.
    """

    def __init__(self, sinks: Iterable[EventLogSink]) -> None:
        self.sinks = list(sinks)
        if not self.sinks:
            raise ValueError("CompositeSink needs at least one sink")

    def append(self, observation: Observation) -> None:
        primary_error: Optional[SinkWriteFailure] = None
        for index, sink in enumerate(self.sinks):
            try:
                sink.append(observation)
            except Exception as e:
                if index == 0:
                    primary_error = e if isinstance(e, SinkWriteFailure) else SinkWriteFailure(str(e))
                else:
                    logger.warning("Secondary sink %r failed: %s", sink, e)
        if primary_error is not None:
            raise primary_error

    def close(self) -> None:
        for sink in self.sinks:
            try:
                sink.close()
            except Exception as e:
                logger.error("Error closing sink %r: %s", sink, e)


class MemorySink(EventLogSink):
    """Keeps observations in a list. Used by ``--testing`` runs and tests."""

    def __init__(self) -> None:
        self.observations: List[Observation] = []
        self._lock = threading.Lock()

    def append(self, observation: Observation) -> None:
        with self._lock:
            self.observations.append(observation)

    def of_kind(self, kind: ObservationKind) -> List[Observation]:
        with self._lock:
            return [o for o in self.observations if o.kind is kind]

    def details(self) -> List[str]:
        with self._lock:
            return [o.detail or "" for o in self.observations if o.kind is ObservationKind.LIFECYCLE]


def safe_append(sink: Optional[EventLogSink], observation: Observation) -> bool:
    """Append without letting a sink failure reach the caller.

    Failures are logged and reported as ``False``; the heartbeat update that
    usually follows must still run.
    """
    if sink is None:
        return False
    try:
        sink.append(observation)
        return True
    except SinkWriteFailure as e:
        logger.error("Event log append failed: %s", e)
    except Exception as e:
        logger.error("Unexpected event log failure: %s", e, exc_info=True)
    return False
