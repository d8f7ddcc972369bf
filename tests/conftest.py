from __future__ import annotations

import threading
import tempfile
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional
from unittest.mock import MagicMock, patch

import pytest

from cell_audit_agent.config import Config
from cell_audit_agent.errors import RequestTimeout, SourceUnavailable
from cell_audit_agent.heartbeat import HeartbeatManager, WatchdogPolicy
from cell_audit_agent.models import AttachmentCandidate, Fix
from cell_audit_agent.sampler import Sampler
from cell_audit_agent.sink import MemorySink
from cell_audit_agent.sources import AttachmentCallback, AttachmentSource, FixSource
from cell_audit_agent.status import StatusDisplay
from cell_audit_agent.store import MemoryStore
from cell_audit_agent.timers import WakeTimer

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, now: float) -> None:
        self.now = now


class FakeWakeTimer(WakeTimer):
    """Single-slot timer that only fires when the test says so."""

    def __init__(self) -> None:
        self.callback: Optional[Callable[[], None]] = None
        self.deadline: Optional[float] = None
        self.armed: List[float] = []
        self.cancels = 0
        self.stopped = False
        self.arm_error: Optional[Exception] = None

    def set_callback(self, callback: Callable[[], None]) -> None:
        self.callback = callback

    def arm(self, at: float) -> None:
        if self.arm_error is not None:
            raise self.arm_error
        self.deadline = at
        self.armed.append(at)

    def cancel(self) -> None:
        self.cancels += 1
        self.deadline = None

    def stop(self) -> None:
        self.stopped = True
        self.deadline = None

    def fire(self) -> None:
        self.deadline = None
        assert self.callback is not None
        self.callback()


class FakeFixSource(FixSource):
    """Answers requests from a script.

    Each scripted outcome is a :class:`Fix` (returned), an exception
    (raised) or a callable ``(timeout, cancel) -> Fix``. An empty script
    times out.
    """

    tier = "fake"

    def __init__(self) -> None:
        self.outcomes: List[Any] = []
        self.requests: List[float] = []
        self.closed = False

    def script(self, *outcomes: Any) -> None:
        self.outcomes.extend(outcomes)

    def request(self, timeout: float, cancel: threading.Event) -> Fix:
        self.requests.append(timeout)
        if not self.outcomes:
            raise RequestTimeout(timeout)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(timeout, cancel)
        return outcome

    def close(self) -> None:
        self.closed = True


class FakeAttachmentSource(AttachmentSource):
    tier = "fake"

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.callback: Optional[AttachmentCallback] = None
        self.registrations = 0
        self.unregistrations = 0

    def register(self, callback: AttachmentCallback) -> None:
        if not self.available:
            raise SourceUnavailable("fake source disabled")
        self.registrations += 1
        self.callback = callback

    def unregister(self) -> None:
        self.unregistrations += 1
        self.callback = None

    def emit(self, candidates: List[AttachmentCandidate]) -> None:
        assert self.callback is not None
        self.callback(candidates)


def cells(primary: str, *neighbours: str) -> List[AttachmentCandidate]:
    """Build a batch with one serving cell and some neighbours."""
    batch = [AttachmentCandidate(primary, quality=-80, is_primary=True, area="401")]
    batch.extend(AttachmentCandidate(n, quality=-100, area="401") for n in neighbours)
    return batch


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wake_timer() -> FakeWakeTimer:
    return FakeWakeTimer()


@pytest.fixture
def fix_source() -> FakeFixSource:
    return FakeFixSource()


@pytest.fixture
def attachment_source() -> FakeAttachmentSource:
    return FakeAttachmentSource()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def status() -> MagicMock:
    return MagicMock(spec=StatusDisplay)


@pytest.fixture
def sampler(
    sink: MemorySink,
    fix_source: FakeFixSource,
    attachment_source: FakeAttachmentSource,
    status: MagicMock,
    clock: FakeClock,
) -> Sampler:
    return Sampler(sink, fix_source, attachment_source, status=status, clock=clock, fix_timeout=240.0)


@pytest.fixture
def policy() -> WatchdogPolicy:
    return WatchdogPolicy()


@pytest.fixture
def manager_factory(
    store: MemoryStore,
    wake_timer: FakeWakeTimer,
    sampler: Sampler,
    sink: MemorySink,
    status: MagicMock,
    clock: FakeClock,
    policy: WatchdogPolicy,
) -> Callable[..., HeartbeatManager]:
    """Build a manager over the shared fakes; keyword args override the policy."""

    def _make(**overrides: Any) -> HeartbeatManager:
        effective = WatchdogPolicy(**{**policy.__dict__, **overrides}) if overrides else policy
        return HeartbeatManager(store, wake_timer, sampler, sink, policy=effective, status=status, clock=clock)

    return _make


@pytest.fixture
def manager(manager_factory: Callable[..., HeartbeatManager]) -> HeartbeatManager:
    return manager_factory()


@pytest.fixture
def mock_config(temp_dir: Path) -> Config:
    """Fixture for a default Config object rooted in a temporary directory."""
    return Config(
        data_dir=str(temp_dir),
        attachment_path=None,
        fix_path=None,
        status_file=None,
        log_file=None,
        log_level="INFO",
        testing=True,
        activitywatch=False,
        port=5600,
        fix_interval=300.0,
        fix_timeout=240.0,
        resurrection_timeout=30.0,
        max_fix_age=120.0,
        debounce_seconds=5.0,
        stale_wake_fraction=0.5,
        backoff_base=None,
        backoff_multiplier=2.0,
        backoff_min=1800.0,
        backoff_max=21600.0,
        heartbeat_coalesce=30.0,
        attachment_heartbeat=True,
    )


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("cell_audit_agent.sources.Observer") as mock:
        mock.return_value.is_alive.return_value = True
        yield mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def cli_args(monkeypatch: pytest.MonkeyPatch) -> Callable[[List[str]], None]:
    """Fixture to mock command line arguments."""

    def _set_args(args: List[str]) -> None:
        monkeypatch.setattr("sys.argv", ["cell-audit-agent"] + args)

    return _set_args
