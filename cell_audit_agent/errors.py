"""Error taxonomy for the audit agent.

None of these are allowed to escape into a timer or observer thread. Callers
catch them at the boundary and degrade to a logged lifecycle event.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "AgentError",
    "SourceUnavailable",
    "RequestTimeout",
    "StaleResult",
    "PersistenceReadFailure",
    "SinkWriteFailure",
    "WakeTimerError",
]


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class SourceUnavailable(AgentError):
    """A signal source is missing, not configured or denied by the host."""


class RequestTimeout(AgentError):
    """A bounded fix request ran past its deadline or was cancelled."""

    def __init__(self, timeout: float, message: Optional[str] = None) -> None:
        self.timeout = timeout
        super().__init__(message or f"no fix within {timeout:.0f}s")


class StaleResult(AgentError):
    """A fix arrived but is older than the freshness threshold."""

    def __init__(self, age: float, max_age: float) -> None:
        self.age = age
        self.max_age = max_age
        super().__init__(f"fix is {age:.0f}s old (limit {max_age:.0f}s)")


class PersistenceReadFailure(AgentError):
    """A persisted key is missing or cannot be decoded."""


class SinkWriteFailure(AgentError):
    """Appending an observation to the event log failed."""


class WakeTimerError(AgentError):
    """The wake timer could not be armed."""
