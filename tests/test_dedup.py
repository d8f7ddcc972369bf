"""Tests for the debounce/dedup filter."""

from __future__ import annotations

import threading

import pytest

from cell_audit_agent.dedup import DedupFilter, should_accept


@pytest.mark.parametrize(
    "new_id,last_id,last_at,now,threshold,expected",
    [
        ("A", None, None, 0.0, 5.0, True),
        ("A", "A", 0.0, 1000.0, 5.0, False),
        ("B", "A", 0.0, 4.9, 5.0, False),
        ("B", "A", 0.0, 5.0, 5.0, True),
        ("B", "A", 0.0, 0.0, 0.0, True),
        (None, None, None, 0.0, 5.0, False),
    ],
)
def test_should_accept(new_id, last_id, last_at, now, threshold, expected) -> None:
    assert should_accept(new_id, last_id, last_at, now, threshold) is expected


def test_filter_records_only_accepted() -> None:
    dedup = DedupFilter(5.0)

    assert dedup.offer("attachment", "A", 0.0) is True
    assert dedup.offer("attachment", "B", 1.0) is False
    assert dedup.last("attachment") == "A"
    assert dedup.offer("attachment", "B", 6.0) is True
    assert dedup.last("attachment") == "B"
    assert dedup.rejected == 1


def test_filter_keys_are_independent() -> None:
    dedup = DedupFilter(5.0)

    assert dedup.offer("attachment", "A", 0.0) is True
    assert dedup.offer("fix", "A", 0.0) is True
    assert dedup.last("missing") is None


def test_filter_reset() -> None:
    dedup = DedupFilter(5.0)
    dedup.offer("attachment", "A", 0.0)
    dedup.reset()

    assert dedup.offer("attachment", "A", 1.0) is True


def test_negative_threshold_rejected() -> None:
    with pytest.raises(ValueError):
        DedupFilter(-1.0)


def test_concurrent_offers_accept_once() -> None:
    dedup = DedupFilter(5.0)
    results = []
    lock = threading.Lock()

    def worker() -> None:
        accepted = dedup.offer("attachment", "A", 0.0)
        with lock:
            results.append(accepted)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert dedup.rejected == 19
