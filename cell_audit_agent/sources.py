"""Signal sources: the attachment (cell) source and the fix (position) source.

Responsibility:
    Platform mechanics stay behind two small interfaces. One implementation
    per capability tier is chosen once at startup by :func:`select_sources`:

    - **file tier**: a modem or positioning helper writes JSON snapshots to
      a file; the file is followed with ``watchdog`` (event-driven, no
      polling in the attachment path).
    - **unavailable tier**: nothing configured; every call raises
      :class:`SourceUnavailable`.

Snapshot formats::

    {"cells": [{"id": "26101", "area": "401", "dbm": -87, "registered": true}, ...]}
    {"lat": 52.37, "lon": 4.89, "accuracy": 12.0, "time": 1760000000.0}

Key Invariants:
    - Snapshot files are read-only to the agent, capped at
      ``MAX_SNAPSHOT_BYTES`` and never followed through symlinks.
    - Observer threads never see an exception from the callbacks.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from cell_audit_agent.errors import RequestTimeout, SourceUnavailable
from cell_audit_agent.models import AttachmentCandidate, Fix
from cell_audit_agent.timers import ThreadingWakeTimer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "AttachmentCallback",
    "AttachmentSource",
    "FixSource",
    "UnavailableAttachmentSource",
    "UnavailableFixSource",
    "SnapshotFollower",
    "FileAttachmentSource",
    "FileFixSource",
    "parse_cells",
    "parse_fix",
    "select_sources",
    "MAX_SNAPSHOT_BYTES",
]

MAX_SNAPSHOT_BYTES = 64 * 1024  # Security: DoS prevention

AttachmentCallback = Callable[[List[AttachmentCandidate]], None]


class AttachmentSource:
    """Delivers a batch of cells whenever the network attachment changes."""

    tier = "abstract"

    def register(self, callback: AttachmentCallback) -> None:
        raise NotImplementedError

    def unregister(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.unregister()


class FixSource:
    """Answers bounded, cancellable position requests."""

    tier = "abstract"

    def request(self, timeout: float, cancel: threading.Event) -> Fix:
        """Return a fix or raise.

        Raises:
            SourceUnavailable: The source is not usable.
            RequestTimeout: No fix before ``timeout`` or ``cancel`` was set.
        """
        raise NotImplementedError

    def close(self) -> None:
        pass


class UnavailableAttachmentSource(AttachmentSource):
    tier = "unavailable"

    def register(self, callback: AttachmentCallback) -> None:
        raise SourceUnavailable("No attachment source configured")

    def unregister(self) -> None:
        pass


class UnavailableFixSource(FixSource):
    tier = "unavailable"

    def request(self, timeout: float, cancel: threading.Event) -> Fix:
        raise SourceUnavailable("No fix source configured")


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def parse_cells(data: Any) -> List[AttachmentCandidate]:
    """Turn a cell snapshot into candidates.

    Malformed entries are skipped. If more than one entry claims to be
    primary, only the first keeps the flag.
    """
    if isinstance(data, dict):
        entries = data.get("cells", [])
    else:
        entries = data
    if not isinstance(entries, list):
        raise ValueError("'cells' must be a list")

    candidates: List[AttachmentCandidate] = []
    seen_primary = False
    for entry in entries:
        if not isinstance(entry, dict):
            logger.debug("Skipping non-object cell entry: %r", entry)
            continue
        identifier = _first(entry, "id", "identifier", "cid")
        if identifier is None or str(identifier).strip() == "":
            logger.debug("Skipping cell entry without id: %r", entry)
            continue
        quality = _first(entry, "dbm", "quality", "signal")
        if isinstance(quality, bool) or not isinstance(quality, (int, float)):
            quality = None
        area = _first(entry, "area", "tac", "lac")
        is_primary = bool(_first(entry, "registered", "is_primary", "primary"))
        if is_primary and seen_primary:
            logger.warning("Snapshot lists more than one primary cell; keeping the first.")
            is_primary = False
        seen_primary = seen_primary or is_primary
        candidates.append(
            AttachmentCandidate(
                identifier=str(identifier),
                quality=int(quality) if quality is not None else None,
                is_primary=is_primary,
                area=str(area) if area is not None else None,
            )
        )
    return candidates


def _parse_time(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("fix time must be a number or ISO 8601 string")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        ts_str = value[:-1] + "+00:00" if value.endswith("Z") else value
        parsed = datetime.fromisoformat(ts_str)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise ValueError("fix time must be a number or ISO 8601 string")


def parse_fix(data: Any) -> Fix:
    """Turn a fix snapshot into a :class:`Fix`.

    Raises:
        ValueError: If coordinates or time are missing or out of range.
    """
    if not isinstance(data, dict):
        raise ValueError("fix snapshot must be an object")
    lat = _first(data, "lat", "latitude")
    lon = _first(data, "lon", "lng", "longitude")
    if isinstance(lat, bool) or isinstance(lon, bool) or not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        raise ValueError("fix snapshot needs numeric lat/lon")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise ValueError(f"coordinates out of range: {lat}, {lon}")
    accuracy = _first(data, "accuracy", "acc")
    if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)):
        accuracy = None
    raw_time = _first(data, "time", "timestamp")
    if raw_time is None:
        raise ValueError("fix snapshot needs a time")
    return Fix(latitude=float(lat), longitude=float(lon), accuracy=accuracy, time=_parse_time(raw_time))


class _SnapshotEventHandler(FileSystemEventHandler):
    """Filter watchdog events down to the one snapshot file."""

    def __init__(self, target_file: Path, on_change: Callable[[], None]) -> None:
        self.target_file = target_file
        self.target_file_str = str(target_file)
        self.on_change = on_change

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        file_path = event.src_path
        if isinstance(event, FileMovedEvent):
            file_path = event.dest_path
        if isinstance(file_path, bytes):
            file_path = file_path.decode("utf-8", "replace")
        if file_path == self.target_file_str:
            return True
        try:
            return Path(file_path).absolute() == self.target_file
        except (OSError, RuntimeError):
            return False

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self.on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self.on_change()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self.on_change()


class SnapshotFollower:
    """Follow one JSON snapshot file and report its parsed content.

    File events are coalesced through a short debounce so an atomic
    write-and-rename produces one read. The observer is restarted if it
    dies (checked on each :meth:`ensure_alive`).

    Attributes:
        path (Path): The snapshot file.
        callback (Callable[[Any], None]): Receives the decoded JSON document.
        debounce_seconds (float): Coalescing window for file events.
    """

    def __init__(
        self,
        path: Union[str, Path],
        callback: Callable[[Any], None],
        debounce_seconds: float = 0.2,
    ) -> None:
        # Security: absolute() instead of resolve() to avoid following symlinks
        self.path = Path(path).absolute()
        self.watch_dir = self.path.parent
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self._observer: Optional[Any] = None
        self._handler = _SnapshotEventHandler(self.path, self._on_file_event)
        self._debounce = ThreadingWakeTimer(self._on_debounce_fired)
        self._lock = threading.Lock()
        self._stopped = True
        self.reads = 0
        self.read_errors = 0
        self._last_observer_restart_attempt = 0.0

    def start(self) -> None:
        """Start the observer and deliver the current content, if any.

        A no-op while already running.

        Raises:
            FileNotFoundError: If the directory holding the snapshot does not exist.
            RuntimeError: If the observer fails to start.
        """
        with self._lock:
            if not self._stopped:
                return
            if not self.watch_dir.exists():
                raise FileNotFoundError(f"Snapshot directory not found: {self.watch_dir}")
            self._debounce = ThreadingWakeTimer(self._on_debounce_fired)
            self._start_observer()
            self._stopped = False
        if self.path.exists():
            self._deliver()

    def _start_observer(self) -> None:
        observer = Observer()
        # Security: recursive=False to prevent watching subdirectories.
        observer.schedule(self._handler, str(self.watch_dir), recursive=False)
        observer.start()
        self._observer = observer
        self._last_observer_restart_attempt = time.monotonic()
        logger.info("Following %s (%s)", self.path, type(observer).__name__)

    def ensure_alive(self) -> bool:
        """Restart the observer if it died. Returns True if it is running."""
        with self._lock:
            if self._stopped:
                return False
            if self._observer is not None and self._observer.is_alive():
                return True
            now = time.monotonic()
            if now - self._last_observer_restart_attempt < 10.0:
                return False
            logger.critical("Snapshot observer for %s found dead. Restarting.", self.path)
            try:
                self._start_observer()
            except (OSError, RuntimeError) as e:
                self._last_observer_restart_attempt = now
                logger.error("Failed to restart observer (check inotify limits?): %s", e)
                return False
            return True

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            observer = self._observer
            self._observer = None
        self._debounce.stop()
        if observer is not None:
            try:
                if observer.is_alive():
                    observer.stop()
                    observer.join(timeout=5.0)
            except Exception as e:
                logger.error("Error stopping observer: %s", e)

    @property
    def running(self) -> bool:
        return not self._stopped

    def _on_file_event(self) -> None:
        if self._stopped:
            return
        self._debounce.arm(time.time() + self.debounce_seconds)

    def _on_debounce_fired(self) -> None:
        if not self._stopped:
            self._deliver()

    def read(self) -> Optional[Any]:
        """Read and decode the snapshot. Returns None if absent or unreadable."""
        try:
            if self.path.is_symlink():
                logger.warning("Refusing to follow symlinked snapshot: %s", self.path)
                return None
            with self.path.open("rb") as f:
                raw = f.read(MAX_SNAPSHOT_BYTES + 1)
        except FileNotFoundError:
            return None
        except OSError as e:
            self.read_errors += 1
            logger.warning("Failed to read snapshot %s: %s", self.path, e)
            return None
        if len(raw) > MAX_SNAPSHOT_BYTES:
            self.read_errors += 1
            logger.warning("Snapshot %s exceeds %d bytes. Ignoring.", self.path, MAX_SNAPSHOT_BYTES)
            return None
        if not raw.strip():
            return None
        try:
            self.reads += 1
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            # Partial write in progress, the next event will deliver the full file
            self.read_errors += 1
            logger.debug("Snapshot %s not decodable yet: %s", self.path, e)
            return None

    def _deliver(self) -> None:
        data = self.read()
        if data is None:
            return
        try:
            self.callback(data)
        except Exception:
            logger.error("Error in snapshot callback for %s", self.path, exc_info=True)

    def __repr__(self) -> str:
        return f"<SnapshotFollower path={self.path} running={self.running}>"


class FileAttachmentSource(AttachmentSource):
    """Attachment source following a cell snapshot file."""

    tier = "file"

    def __init__(self, path: Union[str, Path], debounce_seconds: float = 0.2) -> None:
        self._callback: Optional[AttachmentCallback] = None
        self._lock = threading.Lock()
        self.follower = SnapshotFollower(path, self._on_snapshot, debounce_seconds=debounce_seconds)

    @property
    def registered(self) -> bool:
        return self._callback is not None and self.follower.running

    def register(self, callback: AttachmentCallback) -> None:
        """Register ``callback``, starting or healing the follower.

        Safe to call repeatedly; a second call replaces the callback and
        restarts a dead observer.

        Raises:
            SourceUnavailable: If the snapshot directory does not exist.
        """
        with self._lock:
            self._callback = callback
            if self.follower.running:
                self.follower.ensure_alive()
                return
            try:
                self.follower.start()
            except FileNotFoundError as e:
                raise SourceUnavailable(str(e)) from e
            except (OSError, RuntimeError) as e:
                raise SourceUnavailable(f"Cannot follow {self.follower.path}: {e}") from e

    def unregister(self) -> None:
        with self._lock:
            self._callback = None
        self.follower.stop()

    def _on_snapshot(self, data: Any) -> None:
        try:
            candidates = parse_cells(data)
        except ValueError as e:
            logger.warning("Invalid cell snapshot: %s", e)
            return
        callback = self._callback
        if callback is not None:
            callback(candidates)


class FileFixSource(FixSource):
    """Fix source reading the latest fix written by a positioning helper.

    A request is answered by the first fix that is either newer than the
    fix present when the request started or taken at/after the request
    start. The file is re-read on every change event and at least every
    ``poll_interval`` seconds in case an event was missed.
    """

    tier = "file"

    def __init__(
        self,
        path: Union[str, Path],
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.poll_interval = poll_interval
        self.clock = clock
        self._changed = threading.Event()
        self.follower = SnapshotFollower(path, self._on_snapshot)
        self._started = False
        self._start_lock = threading.Lock()

    def _on_snapshot(self, data: Any) -> None:
        self._changed.set()

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._started:
                self.follower.ensure_alive()
                return
            try:
                self.follower.start()
            except FileNotFoundError as e:
                raise SourceUnavailable(str(e)) from e
            except (OSError, RuntimeError) as e:
                raise SourceUnavailable(f"Cannot follow {self.follower.path}: {e}") from e
            self._started = True

    def _current(self) -> Optional[Fix]:
        data = self.follower.read()
        if data is None:
            return None
        try:
            return parse_fix(data)
        except ValueError as e:
            logger.warning("Invalid fix snapshot: %s", e)
            return None

    def request(self, timeout: float, cancel: threading.Event) -> Fix:
        self._ensure_started()
        requested_at = self.clock()
        deadline = time.monotonic() + timeout
        baseline = self._current()
        baseline_time = baseline.time if baseline is not None else None

        while True:
            fix = self._current()
            if fix is not None:
                newer = baseline_time is None or fix.time > baseline_time
                if newer or fix.time >= requested_at:
                    return fix
            if cancel.is_set():
                raise RequestTimeout(timeout, "request cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RequestTimeout(timeout)
            self._changed.wait(min(self.poll_interval, remaining))
            self._changed.clear()

    def close(self) -> None:
        self.follower.stop()


def select_sources(
    attachment_path: Optional[str],
    fix_path: Optional[str],
) -> Tuple[AttachmentSource, FixSource]:
    """Pick one implementation per source, once, at startup."""
    attachment: AttachmentSource
    fix: FixSource
    if attachment_path:
        attachment = FileAttachmentSource(attachment_path)
    else:
        logger.warning("No attachment_path configured; cell changes will not be sampled.")
        attachment = UnavailableAttachmentSource()
    if fix_path:
        fix = FileFixSource(fix_path)
    else:
        logger.warning("No fix_path configured; position requests will fail as unavailable.")
        fix = UnavailableFixSource()
    logger.info("Source tiers: attachment=%s, fix=%s", attachment.tier, fix.tier)
    return attachment, fix
