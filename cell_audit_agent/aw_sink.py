"""ActivityWatch mirror for the event log.

Observations are mirrored into a local ActivityWatch bucket so they show up
on the same timeline as the rest of the user's activity. The CSV log stays
the source of truth; this sink is best-effort.

Privacy & Offline Policy:
- 100% Local Operation: only the local ActivityWatch server is contacted.
- Offline-First: uses ``queued=True`` so events are buffered by aw-client
  while the server is down and flushed on reconnection.
"""

from __future__ import annotations

import logging
import queue
import re
import socket
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aw_client import ActivityWatchClient
from aw_core.models import Event

from cell_audit_agent.models import Observation
from cell_audit_agent.sink import EventLogSink, event_type_label

logger = logging.getLogger(__name__)

__all__ = ["ActivityWatchSink", "MockActivityWatchClient", "BUCKET_EVENT_TYPE"]

CLIENT_NAME = "cell-audit-agent"
BUCKET_EVENT_TYPE = "cell-audit-observation"


class MockActivityWatchClient:
    """Mock client for testing without a running AW server."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.buckets: Dict[str, Any] = {}
        self.events: List[Dict[str, Any]] = []
        self.client_hostname = "test-host"

    def connect(self) -> None:
        pass

    def disconnect(self) -> None:
        pass

    def create_bucket(self, bucket_id: str, event_type: str, queued: bool = False) -> None:
        self.buckets[bucket_id] = {"event_type": event_type, "queued": queued}

    def heartbeat(self, bucket_id: str, event: Event, pulsetime: float = 0.0, queued: bool = False) -> None:
        self.events.append({
            "bucket_id": bucket_id,
            "data": event.data,
            "timestamp": event.timestamp,
            "pulsetime": pulsetime,
            "queued": queued,
        })

    def get_info(self) -> Dict[str, Any]:
        return {"version": "mock"}

    def flush(self) -> None:
        logger.info("[MOCK] flush: Queue flushed")


def _sanitize_hostname(raw: str) -> str:
    # Keep alphanumeric, hyphens, underscores, dots
    hostname = re.sub(r"[^a-zA-Z0-9\-_.]", "_", raw)
    if not hostname or set(hostname) == {"_"}:
        return "unknown-host"
    return hostname


class ActivityWatchSink(EventLogSink):
    """Event log sink that mirrors observations into an ActivityWatch bucket.

    ``append`` only enqueues; a dedicated worker thread converts and sends,
    so a slow or absent server never blocks the sampling threads.
    Observations are sent as heartbeats with ``pulsetime=0`` so consecutive
    rows are never merged.
    """

    __slots__ = ("port", "testing", "hostname", "bucket_id", "client", "_closed", "_queue", "_worker_thread")

    def __init__(
        self,
        port: Optional[int] = None,
        testing: bool = False,
        client: Optional[Any] = None,
    ) -> None:
        self.port = port
        self.testing = testing
        try:
            raw = socket.gethostname()
            if not raw:
                raise ValueError("Empty hostname")
        except Exception as e:
            logger.warning("Failed to get hostname: %s. Using 'unknown-host'.", e)
            raw = "unknown-host"
        self.hostname = _sanitize_hostname(raw)
        self.bucket_id = f"{CLIENT_NAME}_{self.hostname}"
        self._closed = False

        self.client: Any
        if client is not None:
            self.client = client
        elif testing:
            self.client = MockActivityWatchClient()
        else:
            self.client = ActivityWatchClient(CLIENT_NAME, port=port, testing=testing)

        self._queue: queue.Queue[Optional[Observation]] = queue.Queue()
        self._worker_thread = threading.Thread(target=self._worker_loop, name="ActivityWatchSinkWorker", daemon=True)
        self._worker_thread.start()
        logger.info("ActivityWatch mirror initialized. Bucket: %s", self.bucket_id)

    def wait_for_start(self, timeout: Optional[float] = None, stop_check: Optional[Callable[[], bool]] = None) -> bool:
        """Wait for the ActivityWatch server to answer.

        Args:
            timeout: Maximum time to wait in seconds. If None, wait indefinitely.
            stop_check: Optional callable returning True if waiting should be aborted.

        Returns:
            bool: True if the server answered.
        """
        retry_delay = 1.0
        start_time = time.monotonic()
        while True:
            if stop_check and stop_check():
                return False
            try:
                self.client.get_info()
                logger.info("Connected to ActivityWatch server.")
                return True
            except Exception as e:
                elapsed = time.monotonic() - start_time
                if timeout is not None and elapsed >= timeout:
                    logger.warning(
                        "Could not connect to ActivityWatch server after %ss. Proceeding in offline mode (queued).",
                        timeout,
                    )
                    return False
                logger.warning("Could not connect to ActivityWatch server: %s. Retrying in %ss...", e, retry_delay)
                sleep_time = retry_delay
                if timeout is not None:
                    sleep_time = max(0.0, min(retry_delay, timeout - elapsed))
                time.sleep(sleep_time)
                retry_delay = min(retry_delay * 2, 30.0)

    def ensure_bucket(self) -> None:
        """Create the bucket, queued so it happens even while the server is offline."""
        self.client.create_bucket(self.bucket_id, event_type=BUCKET_EVENT_TYPE, queued=True)
        logger.info("Bucket '%s' ensured (queued).", self.bucket_id)

    def append(self, observation: Observation) -> None:
        if self._closed:
            return
        self._queue.put(observation)

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:  # Sentinel for shutdown
                    break
                self._send(item)
            except Exception as e:
                logger.error("Error in ActivityWatch worker: %s", e, exc_info=True)
            finally:
                self._queue.task_done()

    def _send(self, observation: Observation) -> None:
        data = observation.to_dict()
        data["event_type"] = event_type_label(observation)
        event = Event(timestamp=datetime.fromtimestamp(observation.timestamp, tz=timezone.utc), data=data)
        try:
            self.client.heartbeat(self.bucket_id, event, pulsetime=0.0, queued=True)
        except (TypeError, OverflowError, ValueError) as e:
            logger.error("Failed to serialize observation for ActivityWatch: %s", e)

    def drain(self, timeout: float = 5.0) -> None:
        """Block until queued observations have been handed to aw-client."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)

    def close(self) -> None:
        """Stop the worker, flush aw-client's queue and disconnect."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=1.0)
        try:
            if hasattr(self.client, "flush"):
                self.client.flush()
            if hasattr(self.client, "disconnect"):
                self.client.disconnect()
            logger.info("ActivityWatch mirror closed.")
        except Exception as e:
            logger.error("Error closing ActivityWatch client: %s", e)

    def __repr__(self) -> str:
        return f"<ActivityWatchSink bucket={self.bucket_id} host={self.hostname}>"
