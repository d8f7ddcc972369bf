"""Debounce and deduplication of attachment events.

The filter only decides whether an event is worth a log row. It never
gates heartbeats: the sampler reports liveness whether or not the filter
accepted the event.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Hashable, Optional

logger = logging.getLogger(__name__)

__all__ = ["should_accept", "DedupFilter", "DEFAULT_DEBOUNCE_SECONDS"]

DEFAULT_DEBOUNCE_SECONDS = 5.0


def should_accept(
    new_id: Optional[str],
    last_id: Optional[str],
    last_accept_at: Optional[float],
    now: float,
    threshold: float = DEFAULT_DEBOUNCE_SECONDS,
) -> bool:
    """Decide whether a new identifier is novel enough to log.

    Args:
        new_id: Identifier carried by the new event.
        last_id: Identifier of the last accepted event of the same class.
        last_accept_at: When the last event was accepted, or None if never.
        now: Current time in seconds.
        threshold: Minimum spacing between accepted events.

    Returns:
        bool: False for a repeat of ``last_id`` or for an event inside the
        debounce window, True otherwise.

    Example:
        >>> should_accept("A", None, None, 0.0)
        True
        >>> should_accept("A", "A", 0.0, 100.0)
        False
        >>> should_accept("B", "A", 98.0, 100.0)
        False
    """
    if new_id == last_id:
        return False
    if last_accept_at is not None and (now - last_accept_at) < threshold:
        return False
    return True


@dataclass
class _Entry:
    last_id: Optional[str] = None
    last_accept_at: Optional[float] = None


class DedupFilter:
    """Per-source holder for the last accepted identifier.

    State is memory only and starts empty in each process.
    """

    def __init__(self, threshold: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        if threshold < 0:
            raise ValueError(f"debounce threshold must be non-negative, got {threshold}")
        self.threshold = threshold
        self._entries: Dict[Hashable, _Entry] = {}
        self._lock = threading.Lock()
        self.rejected = 0

    def offer(self, key: Hashable, identifier: Optional[str], now: float) -> bool:
        """Offer an identifier for ``key`` and record it if accepted."""
        with self._lock:
            entry = self._entries.setdefault(key, _Entry())
            if not should_accept(identifier, entry.last_id, entry.last_accept_at, now, self.threshold):
                self.rejected += 1
                logger.debug("Dedup rejected %s=%s", key, identifier)
                return False
            entry.last_id = identifier
            entry.last_accept_at = now
            return True

    def last(self, key: Hashable) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.last_id if entry else None

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
