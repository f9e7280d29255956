"""Tests for fingerprinting and the duplicate filter."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest

from bugscrub import DuplicateFilter, MemoryStorage, RawReport, SqliteStorage, fingerprint


HOUR = 3600.0


# ── Fingerprint ──────────────────────────────────────────────────────

def test_fingerprint_normalizes_case_and_whitespace():
    a = RawReport(title="Save  button broken", description="Nothing happens\n", stack="at save()")
    b = RawReport(title="  save button BROKEN", description="nothing   happens", stack="AT SAVE()")
    assert fingerprint(a) == fingerprint(b)


def test_fingerprint_ignores_custom_data_and_timestamps():
    a = RawReport(title="t", description="d", custom_data={"n": 1}, metadata={"at": 1})
    b = RawReport(title="t", description="d", custom_data={"n": 2}, metadata={"at": 2})
    assert fingerprint(a) == fingerprint(b)


def test_fingerprint_differs_on_stack():
    a = RawReport(title="t", description="d", stack="at a()")
    b = RawReport(title="t", description="d", stack="at b()")
    assert fingerprint(a) != fingerprint(b)


# ── Window ───────────────────────────────────────────────────────────

def test_first_sighting_not_suppressed():
    dedupe = DuplicateFilter(MemoryStorage())
    assert not dedupe.should_suppress("fp", now=0.0)


def test_suppressed_within_window():
    dedupe = DuplicateFilter(MemoryStorage(), window_hours=24)
    dedupe.record("fp", now=0.0)
    assert dedupe.should_suppress("fp", now=23 * HOUR)


def test_expires_after_window():
    storage = MemoryStorage()
    dedupe = DuplicateFilter(storage, window_hours=24)
    dedupe.record("fp", now=0.0)
    assert not dedupe.should_suppress("fp", now=24 * HOUR)
    assert storage.get("dedupe", "fp") is None


def test_window_measured_from_first_sighting():
    dedupe = DuplicateFilter(MemoryStorage(), window_hours=1)
    dedupe.record("fp", now=0.0)
    dedupe.record("fp", now=0.9 * HOUR)
    assert not dedupe.should_suppress("fp", now=1.1 * HOUR)


def test_record_counts():
    dedupe = DuplicateFilter(MemoryStorage())
    assert dedupe.record("fp", now=0.0) == 1
    assert dedupe.record("fp", now=1.0) == 2
    assert dedupe.stats("fp") == {"first_seen_at": 0.0, "count": 2}


def test_record_after_expiry_restarts_count():
    dedupe = DuplicateFilter(MemoryStorage(), window_hours=1)
    dedupe.record("fp", now=0.0)
    dedupe.record("fp", now=10.0)
    assert dedupe.record("fp", now=2 * HOUR) == 1
    assert dedupe.stats("fp")["first_seen_at"] == 2 * HOUR


def test_uses_clock_when_now_omitted():
    now = [100.0]
    dedupe = DuplicateFilter(MemoryStorage(), window_hours=1, clock=lambda: now[0])
    dedupe.record("fp")
    assert dedupe.should_suppress("fp")
    now[0] += 2 * HOUR
    assert not dedupe.should_suppress("fp")


def test_max_entries_evicts_oldest():
    dedupe = DuplicateFilter(MemoryStorage(), max_entries=2)
    dedupe.record("a", now=1.0)
    dedupe.record("b", now=2.0)
    dedupe.record("c", now=3.0)
    assert dedupe.stats("a") is None
    assert dedupe.should_suppress("b", now=4.0)
    assert dedupe.should_suppress("c", now=4.0)


def test_clear():
    dedupe = DuplicateFilter(MemoryStorage())
    dedupe.record("a", now=0.0)
    dedupe.clear()
    assert not dedupe.should_suppress("a", now=0.0)


def test_index_survives_restart(tmp_path):
    db = tmp_path / "bugscrub.db"
    storage = SqliteStorage(db)
    DuplicateFilter(storage).record("fp", now=0.0)
    storage.close()

    reopened = SqliteStorage(db)
    assert DuplicateFilter(reopened).should_suppress("fp", now=HOUR)
    reopened.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
