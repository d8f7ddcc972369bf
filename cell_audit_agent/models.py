"""Value types shared by the sampler, the heartbeat manager and the sinks."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

__all__ = [
    "ObservationKind",
    "LifecycleEvent",
    "Source",
    "AttachmentCandidate",
    "Fix",
    "Observation",
    "HeartbeatState",
]


class ObservationKind(str, enum.Enum):
    ATTACHMENT_CHANGED = "AttachmentChanged"
    FIX_SUCCEEDED = "FixSucceeded"
    FIX_FAILED = "FixFailed"
    ATTACHMENT_AUDIT = "AttachmentAudit"
    LIFECYCLE = "LifecycleEvent"


class LifecycleEvent(str, enum.Enum):
    """Values carried in the ``detail`` of a lifecycle observation."""

    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    SUSPECT_ENTERED = "suspect-entered"
    RESURRECTION_SUCCESS = "resurrection-success"
    RESURRECTION_FAILED = "resurrection-failed"
    BACKOFF_ARMED = "backoff-armed"
    STALE_WAKE_IGNORED = "stale-wake-ignored"
    ARM_FAILED = "arm-failed"
    LISTENER_REGISTERED = "listener-registered"
    RESTARTED = "restarted"
    STARTED = "started"
    STOPPED = "stopped"


class Source(str, enum.Enum):
    ATTACHMENT = "attachment"
    FIX = "fix"
    WATCHDOG = "watchdog"
    AGENT = "agent"


@dataclass(frozen=True)
class AttachmentCandidate:
    """One cell reported by the attachment source.

    Attributes:
        identifier (str): Cell id.
        quality (Optional[int]): Signal strength in dBm.
        is_primary (bool): True for the serving cell. At most one per batch.
        area (Optional[str]): Location/tracking area code.
    """

    identifier: str
    quality: Optional[int] = None
    is_primary: bool = False
    area: Optional[str] = None


@dataclass(frozen=True)
class Fix:
    """A positioning result. ``time`` is the epoch time the fix was taken."""

    latitude: float
    longitude: float
    accuracy: Optional[float]
    time: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.time)


@dataclass(frozen=True)
class Observation:
    """An immutable fact destined for the event log.

    Attributes:
        kind (ObservationKind): What happened.
        timestamp (float): Epoch seconds.
        source (Source): Which producer emitted it. Ordering is per source.
        identifier (Optional[str]): Cell id.
        area (Optional[str]): LAC/TAC of the cell.
        quality (Optional[int]): Signal strength in dBm.
        is_primary (Optional[bool]): Whether the cell was serving.
        latitude (Optional[float]): Fix latitude.
        longitude (Optional[float]): Fix longitude.
        accuracy (Optional[float]): Fix accuracy in meters.
        latency (Optional[float]): Request-to-completion time in seconds.
        detail (Optional[str]): Failure reason or lifecycle value.
    """

    kind: ObservationKind
    timestamp: float
    source: Source
    identifier: Optional[str] = None
    area: Optional[str] = None
    quality: Optional[int] = None
    is_primary: Optional[bool] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    latency: Optional[float] = None
    detail: Optional[str] = None

    @classmethod
    def lifecycle(
        cls,
        event: LifecycleEvent,
        timestamp: float,
        source: Source = Source.WATCHDOG,
        note: Optional[str] = None,
    ) -> Observation:
        detail = event.value if not note else f"{event.value}: {note}"
        return cls(kind=ObservationKind.LIFECYCLE, timestamp=timestamp, source=source, detail=detail)

    def with_fix(self, fix: Fix) -> Observation:
        return replace(self, latitude=fix.latitude, longitude=fix.longitude, accuracy=fix.accuracy)

    @property
    def as_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "source": self.source.value}
        for key in (
            "identifier", "area", "quality", "is_primary", "latitude",
            "longitude", "accuracy", "latency", "detail",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class HeartbeatState:
    """Persisted liveness record. Survives process restarts.

    Attributes:
        last_heartbeat_at (Optional[float]): Epoch time of the last accepted liveness signal.
        watchdog_scheduled_at (Optional[float]): When the armed wake timer fires, or None.
        backoff_count (int): Consecutive resurrection failures.
    """

    last_heartbeat_at: Optional[float] = None
    watchdog_scheduled_at: Optional[float] = None
    backoff_count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.last_heartbeat_at is None and self.watchdog_scheduled_at is None and self.backoff_count == 0
