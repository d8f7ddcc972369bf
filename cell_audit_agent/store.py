"""Durable key-value store for the heartbeat record.

The store is a small JSON document replaced atomically on every write
(write to a temporary file in the same directory, fsync, ``os.replace``).
No transaction spans several keys, so the heartbeat record is re-derived
from whatever subset of keys is readable; a missing or corrupt key reads
as absent.
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cell_audit_agent.errors import PersistenceReadFailure
from cell_audit_agent.models import HeartbeatState

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "KeyValueStore",
    "JsonFileStore",
    "MemoryStore",
    "load_heartbeat_state",
    "save_heartbeat_state",
    "KEY_LAST_HEARTBEAT_AT",
    "KEY_WATCHDOG_SCHEDULED_AT",
    "KEY_BACKOFF_COUNT",
    "KEY_SERVICE_REQUESTED",
]

KEY_LAST_HEARTBEAT_AT = "last_heartbeat_at"
KEY_WATCHDOG_SCHEDULED_AT = "watchdog_scheduled_at"
KEY_BACKOFF_COUNT = "backoff_count"
KEY_SERVICE_REQUESTED = "service_requested"

MAX_STATE_FILE_BYTES = 64 * 1024


class KeyValueStore:
    """Durable ``get``/``set`` contract."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """Process-local store. Loses everything on exit; for tests and ``--testing``."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self.data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def clear(self) -> None:
        self.data.clear()


class JsonFileStore(KeyValueStore):
    """JSON document on disk, rewritten atomically on each ``set``.

    Attributes:
        path (Path): The state file. Its parent directory is created on demand.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        try:
            if self.path.is_symlink():
                raise PersistenceReadFailure(f"Refusing to read symlinked state file: {self.path}")
            with self.path.open("rb") as f:
                raw = f.read(MAX_STATE_FILE_BYTES + 1)
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise PersistenceReadFailure(f"Cannot read {self.path}: {e}") from e
        if len(raw) > MAX_STATE_FILE_BYTES:
            raise PersistenceReadFailure(f"State file too large: {self.path}")
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceReadFailure(f"Corrupt state file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceReadFailure(f"State file is not an object: {self.path}")
        return data

    def _read_lenient(self) -> Dict[str, Any]:
        try:
            return self._read()
        except PersistenceReadFailure as e:
            logger.warning("%s. Treating as empty.", e)
            return {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, key: str) -> Any:
        with self._lock:
            return self._read_lenient().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read_lenient()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read_lenient()
            if key in data:
                del data[key]
                self._write(data)

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    def __repr__(self) -> str:
        return f"<JsonFileStore path={self.path}>"


def _as_time(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value < 0:
        return None
    return value


def load_heartbeat_state(store: KeyValueStore) -> HeartbeatState:
    """Re-derive the heartbeat record from whichever keys are readable.

    Never raises: an unreadable key is logged and treated as absent, which
    amounts to "no prior heartbeat".
    """
    values: Dict[str, Any] = {}
    for key in (KEY_LAST_HEARTBEAT_AT, KEY_WATCHDOG_SCHEDULED_AT, KEY_BACKOFF_COUNT):
        try:
            values[key] = store.get(key)
        except Exception as e:
            logger.warning("Failed to read persisted %s: %s", key, e)
            values[key] = None

    state = HeartbeatState(
        last_heartbeat_at=_as_time(values[KEY_LAST_HEARTBEAT_AT]),
        watchdog_scheduled_at=_as_time(values[KEY_WATCHDOG_SCHEDULED_AT]),
    )
    raw_count = values[KEY_BACKOFF_COUNT]
    if isinstance(raw_count, int) and not isinstance(raw_count, bool) and raw_count >= 0:
        state.backoff_count = raw_count
    elif raw_count is not None:
        logger.warning("Ignoring invalid persisted backoff_count: %r", raw_count)

    for key, parsed in (
        (KEY_LAST_HEARTBEAT_AT, state.last_heartbeat_at),
        (KEY_WATCHDOG_SCHEDULED_AT, state.watchdog_scheduled_at),
    ):
        if values[key] is not None and parsed is None:
            logger.warning("Ignoring invalid persisted %s: %r", key, values[key])
    return state


def save_heartbeat_state(store: KeyValueStore, state: HeartbeatState) -> None:
    """Persist every field of ``state``. ``None`` fields are deleted."""
    for key, value in (
        (KEY_LAST_HEARTBEAT_AT, state.last_heartbeat_at),
        (KEY_WATCHDOG_SCHEDULED_AT, state.watchdog_scheduled_at),
    ):
        if value is None:
            store.delete(key)
        else:
            store.set(key, value)
    store.set(KEY_BACKOFF_COUNT, state.backoff_count)
