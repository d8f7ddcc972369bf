"""Tests for the signal sources and snapshot parsing."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, List
from unittest.mock import MagicMock

import pytest
from watchdog.events import FileModifiedEvent, FileMovedEvent

from cell_audit_agent.errors import RequestTimeout, SourceUnavailable
from cell_audit_agent.models import AttachmentCandidate
from cell_audit_agent.sources import (
    MAX_SNAPSHOT_BYTES,
    FileAttachmentSource,
    FileFixSource,
    SnapshotFollower,
    UnavailableAttachmentSource,
    UnavailableFixSource,
    _SnapshotEventHandler,
    parse_cells,
    parse_fix,
    select_sources,
)

from tests.conftest import T0

if TYPE_CHECKING:
    from pytest import LogCaptureFixture


def write_json(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


def test_parse_cells_full_entries() -> None:
    candidates = parse_cells(
        {
            "cells": [
                {"id": "26101", "area": "401", "dbm": -87, "registered": True},
                {"cid": 26102, "tac": 401, "signal": -101},
                {"identifier": "x", "quality": -90.6, "primary": False},
            ]
        }
    )

    assert candidates == [
        AttachmentCandidate("26101", quality=-87, is_primary=True, area="401"),
        AttachmentCandidate("26102", quality=-101, is_primary=False, area="401"),
        AttachmentCandidate("x", quality=-90, is_primary=False, area=None),
    ]


def test_parse_cells_skips_malformed_entries() -> None:
    candidates = parse_cells([{"area": "1"}, "junk", {"id": " "}, {"id": "ok", "dbm": "strong"}])

    assert candidates == [AttachmentCandidate("ok")]


def test_parse_cells_keeps_first_primary(caplog: LogCaptureFixture) -> None:
    candidates = parse_cells([{"id": "a", "registered": True}, {"id": "b", "registered": True}])

    assert [c.is_primary for c in candidates] == [True, False]
    assert "more than one primary" in caplog.text


def test_parse_cells_rejects_bad_container() -> None:
    with pytest.raises(ValueError):
        parse_cells({"cells": "nope"})


@pytest.mark.parametrize(
    "data,expected_time",
    [
        ({"lat": 52.37, "lon": 4.89, "accuracy": 12.0, "time": T0}, T0),
        ({"latitude": 52.37, "lng": 4.89, "acc": 12, "timestamp": "2023-11-14T22:13:20Z"}, T0),
        ({"lat": 52.37, "longitude": 4.89, "time": "2023-11-14T22:13:20"}, T0),
    ],
)
def test_parse_fix(data: dict, expected_time: float) -> None:
    fix = parse_fix(data)

    assert fix.latitude == 52.37
    assert fix.longitude == 4.89
    assert fix.time == expected_time


@pytest.mark.parametrize(
    "data",
    [
        [],
        {"lat": "52", "lon": 4.0, "time": T0},
        {"lat": 91.0, "lon": 4.0, "time": T0},
        {"lat": 52.0, "lon": 4.0},
        {"lat": 52.0, "lon": 4.0, "time": "yesterday"},
        {"lat": True, "lon": 4.0, "time": T0},
    ],
)
def test_parse_fix_rejects_invalid(data: Any) -> None:
    with pytest.raises(ValueError):
        parse_fix(data)


def test_event_handler_filters_target(temp_dir: Path) -> None:
    target = temp_dir / "cells.json"
    on_change = MagicMock()
    handler = _SnapshotEventHandler(target, on_change)

    handler.on_modified(FileModifiedEvent(str(temp_dir / "other.json")))
    on_change.assert_not_called()

    handler.on_modified(FileModifiedEvent(str(target)))
    handler.on_moved(FileMovedEvent(str(temp_dir / ".tmp123"), str(target)))
    assert on_change.call_count == 2


def test_follower_missing_directory(temp_dir: Path, mock_observer: MagicMock) -> None:
    follower = SnapshotFollower(temp_dir / "missing" / "cells.json", MagicMock())

    with pytest.raises(FileNotFoundError):
        follower.start()
    mock_observer.assert_not_called()


def test_follower_delivers_existing_content(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "cells.json"
    write_json(path, {"cells": []})
    callback = MagicMock()
    follower = SnapshotFollower(path, callback)

    follower.start()

    callback.assert_called_once_with({"cells": []})
    mock_observer.return_value.schedule.assert_called_once()
    assert mock_observer.return_value.schedule.call_args[1]["recursive"] is False
    follower.stop()
    assert not follower.running


def test_follower_debounces_file_events(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "cells.json"
    delivered = threading.Event()
    callback = MagicMock(side_effect=lambda data: delivered.set())
    follower = SnapshotFollower(path, callback, debounce_seconds=0.05)
    follower.start()
    write_json(path, {"cells": [{"id": "1"}]})

    for _ in range(20):
        follower._handler.on_modified(FileModifiedEvent(str(path)))

    assert delivered.wait(2.0)
    assert callback.call_count == 1
    follower.stop()


def test_follower_start_is_idempotent(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "cells.json"
    write_json(path, {"cells": []})
    callback = MagicMock()
    follower = SnapshotFollower(path, callback)

    follower.start()
    follower.start()

    assert mock_observer.call_count == 1
    callback.assert_called_once()
    follower.stop()


def test_follower_failed_start_leaves_it_stopped(temp_dir: Path, mock_observer: MagicMock) -> None:
    mock_observer.return_value.start.side_effect = RuntimeError("inotify watch limit reached")
    follower = SnapshotFollower(temp_dir / "cells.json", MagicMock())

    with pytest.raises(RuntimeError):
        follower.start()

    assert not follower.running


def test_follower_read_limits(temp_dir: Path, caplog: LogCaptureFixture) -> None:
    path = temp_dir / "cells.json"
    follower = SnapshotFollower(path, MagicMock())

    assert follower.read() is None

    path.write_text("x" * (MAX_SNAPSHOT_BYTES + 1), encoding="utf-8")
    assert follower.read() is None
    assert "exceeds" in caplog.text

    path.write_text('{"cells": [', encoding="utf-8")
    assert follower.read() is None

    real = temp_dir / "real.json"
    write_json(real, {"cells": []})
    path.unlink()
    path.symlink_to(real)
    assert follower.read() is None
    assert "symlinked" in caplog.text


def test_follower_restarts_dead_observer(temp_dir: Path, mock_observer: MagicMock) -> None:
    follower = SnapshotFollower(temp_dir / "cells.json", MagicMock())
    follower.start()
    mock_observer.return_value.is_alive.return_value = False
    follower._last_observer_restart_attempt = -1e9

    assert follower.ensure_alive() is True
    assert mock_observer.call_count == 2
    follower.stop()


def test_file_attachment_source_delivers_candidates(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "cells.json"
    write_json(path, {"cells": [{"id": "26101", "registered": True}, {"id": "26102"}]})
    received: List[List[AttachmentCandidate]] = []
    source = FileAttachmentSource(path)

    source.register(received.append)

    assert source.registered
    assert [c.identifier for c in received[0]] == ["26101", "26102"]

    # Re-registering heals instead of restarting
    source.register(received.append)
    assert mock_observer.call_count == 1

    source.unregister()
    assert not source.registered


def test_concurrent_registers_start_one_observer(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "cells.json"
    write_json(path, {"cells": [{"id": "26101", "registered": True}]})

    for _ in range(50):
        source = FileAttachmentSource(path)
        before = mock_observer.call_count
        barrier = threading.Barrier(2)
        errors: List[Exception] = []

        def worker() -> None:
            barrier.wait()
            try:
                source.register(MagicMock())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert mock_observer.call_count - before == 1
        assert source.registered
        source.unregister()


def test_file_attachment_source_unavailable(temp_dir: Path, mock_observer: MagicMock) -> None:
    source = FileAttachmentSource(temp_dir / "nowhere" / "cells.json")

    with pytest.raises(SourceUnavailable):
        source.register(MagicMock())


def test_file_attachment_source_ignores_invalid_snapshot(
    temp_dir: Path, mock_observer: MagicMock, caplog: LogCaptureFixture
) -> None:
    path = temp_dir / "cells.json"
    write_json(path, {"cells": 5})
    callback = MagicMock()

    FileAttachmentSource(path).register(callback)

    callback.assert_not_called()
    assert "Invalid cell snapshot" in caplog.text


def test_file_fix_source_returns_fresh_fix(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "fix.json"
    write_json(path, {"lat": 1.0, "lon": 2.0, "accuracy": 5.0, "time": T0 + 1})
    source = FileFixSource(path, poll_interval=0.01, clock=lambda: T0)

    fix = source.request(1.0, threading.Event())

    assert (fix.latitude, fix.longitude, fix.time) == (1.0, 2.0, T0 + 1)
    source.close()


def test_file_fix_source_waits_for_newer_fix(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "fix.json"
    write_json(path, {"lat": 1.0, "lon": 2.0, "time": T0 - 600})
    source = FileFixSource(path, poll_interval=0.01, clock=lambda: T0)

    def writer() -> None:
        write_json(path, {"lat": 3.0, "lon": 4.0, "time": T0 - 10})

    timer = threading.Timer(0.05, writer)
    timer.start()
    fix = source.request(2.0, threading.Event())
    timer.join()

    assert fix.latitude == 3.0
    source.close()


def test_file_fix_source_times_out(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "fix.json"
    write_json(path, {"lat": 1.0, "lon": 2.0, "time": T0 - 600})
    source = FileFixSource(path, poll_interval=0.01, clock=lambda: T0)

    with pytest.raises(RequestTimeout):
        source.request(0.05, threading.Event())


def test_file_fix_source_honours_cancel(temp_dir: Path, mock_observer: MagicMock) -> None:
    path = temp_dir / "fix.json"
    source = FileFixSource(path, poll_interval=0.01, clock=lambda: T0)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RequestTimeout, match="cancelled"):
        source.request(10.0, cancel)


def test_file_fix_source_unavailable(temp_dir: Path, mock_observer: MagicMock) -> None:
    source = FileFixSource(temp_dir / "nowhere" / "fix.json")

    with pytest.raises(SourceUnavailable):
        source.request(1.0, threading.Event())


def test_unavailable_sources() -> None:
    with pytest.raises(SourceUnavailable):
        UnavailableAttachmentSource().register(MagicMock())
    with pytest.raises(SourceUnavailable):
        UnavailableFixSource().request(1.0, threading.Event())


def test_select_sources(temp_dir: Path, caplog: LogCaptureFixture) -> None:
    attachment, fix = select_sources(None, None)
    assert attachment.tier == "unavailable" and fix.tier == "unavailable"
    assert "No attachment_path configured" in caplog.text

    attachment, fix = select_sources(str(temp_dir / "cells.json"), str(temp_dir / "fix.json"))
    assert isinstance(attachment, FileAttachmentSource)
    assert isinstance(fix, FileFixSource)
