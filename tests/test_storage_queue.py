"""Tests for storage backends and the persistent delivery queue."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest

from bugscrub import MemoryStorage, PersistentQueue, SqliteStorage
from bugscrub.errors import StorageError
from bugscrub.persistent_queue import NAMESPACE
from bugscrub.types import BugReport, EntryStatus


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _report(title="Crash"):
    return BugReport(id=f"fp-{title}", title=title, description="boom")


def _queue(storage=None, clock=None, **kw):
    kw.setdefault("rng", lambda: 0.5)       # zero jitter
    q = PersistentQueue(storage or MemoryStorage(), clock=clock or Clock(), **kw)
    return q.open()


# ── Storage ──────────────────────────────────────────────────────────

@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    s = MemoryStorage() if request.param == "memory" else SqliteStorage(tmp_path / "s.db")
    yield s
    s.close()


def test_storage_put_get_delete(storage):
    storage.put("ns", "k", {"a": [1, 2], "b": None})
    assert storage.get("ns", "k") == {"a": [1, 2], "b": None}
    storage.delete("ns", "k")
    assert storage.get("ns", "k") is None
    storage.delete("ns", "k")       # deleting twice is harmless


def test_storage_namespaces_isolated(storage):
    storage.put("one", "k", {"v": 1})
    storage.put("two", "k", {"v": 2})
    assert storage.items("one") == [("k", {"v": 1})]
    assert storage.get("two", "k") == {"v": 2}


def test_storage_overwrite(storage):
    storage.put("ns", "k", {"v": 1})
    storage.put("ns", "k", {"v": 2})
    assert storage.items("ns") == [("k", {"v": 2})]


def test_storage_rejects_unserializable(storage):
    with pytest.raises(StorageError):
        storage.put("ns", "k", {"v": object()})
    assert storage.get("ns", "k") is None


def test_memory_storage_returns_copies():
    storage = MemoryStorage()
    storage.put("ns", "k", {"v": [1]})
    storage.get("ns", "k")["v"].append(2)
    assert storage.get("ns", "k") == {"v": [1]}


def test_sqlite_storage_unwritable_path(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(StorageError):
        SqliteStorage(blocker / "nested" / "q.db")


# ── Enqueue / ordering ───────────────────────────────────────────────

def test_enqueue_is_pending_and_ready():
    clock = Clock()
    q = _queue(clock=clock)
    entry_id = q.enqueue(_report())
    entry = q.get(entry_id)
    assert entry.status is EntryStatus.PENDING
    assert entry.next_attempt_at == clock.now
    assert q.peek_ready().entry_id == entry_id


def test_fifo_order():
    q = _queue()
    ids = [q.enqueue(_report(str(i))) for i in range(3)]
    assert [e.entry_id for e in q.entries()] == ids
    assert q.peek_ready().entry_id == ids[0]


def test_enqueue_requires_open():
    q = PersistentQueue(MemoryStorage())
    with pytest.raises(StorageError):
        q.enqueue(_report())


def test_enqueue_storage_failure_is_loud():
    class Failing(MemoryStorage):
        def put(self, namespace, key, record):
            raise StorageError("disk full")

    q = _queue(Failing())
    with pytest.raises(StorageError):
        q.enqueue(_report())
    assert len(q) == 0


def test_max_queue_size_drops_oldest():
    failed = []
    q = PersistentQueue(MemoryStorage(), max_queue_size=2, clock=Clock())
    q.subscribe(lambda entry, error: failed.append((entry.report.title, error)))
    q.open()
    q.enqueue(_report("a"))
    q.enqueue(_report("b"))
    q.enqueue(_report("c"))
    assert [e.report.title for e in q.entries()] == ["b", "c"]
    assert failed == [("a", "dropped: queue full")]


def test_max_queue_size_skips_in_flight():
    failed = []
    q = PersistentQueue(MemoryStorage(), max_queue_size=2, clock=Clock())
    q.subscribe(lambda entry, error: failed.append(entry.report.title))
    q.open()
    first = q.enqueue(_report("a"))
    q.enqueue(_report("b"))
    q.mark_in_flight(first)
    q.enqueue(_report("c"))
    assert [e.report.title for e in q.entries()] == ["a", "c"]
    assert q.get(first).status is EntryStatus.IN_FLIGHT
    assert failed == ["b"]
    q.mark_delivered(first)
    assert q.get(first) is None


def test_max_queue_size_all_in_flight_rejects():
    failed = []
    q = PersistentQueue(MemoryStorage(), max_queue_size=1, clock=Clock())
    q.subscribe(lambda entry, error: failed.append(entry.report.title))
    q.open()
    first = q.enqueue(_report("a"))
    q.mark_in_flight(first)
    with pytest.raises(StorageError):
        q.enqueue(_report("b"))
    assert failed == []
    assert [e.report.title for e in q.entries()] == ["a"]
    assert q.get(first).status is EntryStatus.IN_FLIGHT


# ── State transitions ────────────────────────────────────────────────

def test_in_flight_not_ready():
    q = _queue()
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    assert q.get(entry_id).report.attempts == 1
    assert q.peek_ready() is None


def test_mark_in_flight_twice_rejected():
    q = _queue()
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    with pytest.raises(ValueError):
        q.mark_in_flight(entry_id)


def test_mark_pending_undoes_attempt():
    q = _queue()
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    q.mark_pending(entry_id)
    entry = q.get(entry_id)
    assert entry.status is EntryStatus.PENDING
    assert entry.report.attempts == 0
    assert entry.backoff_exponent == 0


def test_mark_delivered_removes():
    storage = MemoryStorage()
    q = _queue(storage)
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    q.mark_delivered(entry_id)
    assert len(q) == 0
    assert storage.items(NAMESPACE) == []


def test_unknown_entry():
    q = _queue()
    with pytest.raises(KeyError):
        q.mark_delivered("nope")


# ── Backoff ──────────────────────────────────────────────────────────

def test_backoff_doubles_and_caps():
    q = _queue(backoff_base_ms=1000, backoff_max_ms=30000)
    delays = [q.backoff_delay_ms(n) for n in range(1, 8)]
    assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]


def test_backoff_jitter_bounds():
    low = _queue(rng=lambda: 0.0, jitter=0.1)
    high = _queue(rng=lambda: 1.0, jitter=0.1)
    assert low.backoff_delay_ms(3) == pytest.approx(3600)
    assert high.backoff_delay_ms(3) == pytest.approx(4400)
    assert high.backoff_delay_ms(10) == 30000


def test_backoff_monotone_and_bounded_with_jitter():
    import random
    rnd = random.Random(7)
    q = _queue(rng=rnd.random, jitter=0.1, backoff_base_ms=500, backoff_max_ms=20000)
    previous = 0
    for exponent in range(1, 12):
        delay = q.backoff_delay_ms(exponent)
        assert delay <= 20000
        assert delay >= previous * 0.8
        previous = delay


def test_retriable_failure_schedules_retry():
    clock = Clock()
    q = _queue(clock=clock)
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    status = q.mark_failed(entry_id, "503", retriable=True)
    entry = q.get(entry_id)
    assert status is EntryStatus.PENDING
    assert entry.backoff_exponent == 1
    assert entry.next_attempt_at == pytest.approx(clock.now + 1.0)
    assert entry.last_error == "503"
    assert q.peek_ready() is None
    assert q.peek_ready(clock.now + 1.0).entry_id == entry_id
    assert q.next_wakeup() == pytest.approx(clock.now + 1.0)


def test_retry_after_takes_precedence_but_is_capped():
    clock = Clock()
    q = _queue(clock=clock, backoff_max_ms=30000)
    entry_id = q.enqueue(_report())

    q.mark_in_flight(entry_id)
    q.mark_failed(entry_id, "429", retriable=True, retry_after=7)
    assert q.get(entry_id).next_attempt_at == pytest.approx(clock.now + 7)

    q.mark_in_flight(entry_id)
    q.mark_failed(entry_id, "429", retriable=True, retry_after=3600)
    assert q.get(entry_id).next_attempt_at == pytest.approx(clock.now + 30)


def test_permanent_failure_notifies_and_removes():
    failures = []
    q = _queue()
    q.subscribe(lambda entry, error: failures.append((entry.entry_id, error)))
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    assert q.mark_failed(entry_id, "400 bad request", retriable=False) is EntryStatus.FAILED_PERMANENT
    assert failures == [(entry_id, "400 bad request")]
    assert q.get(entry_id) is None


def test_attempt_budget_exhausted():
    failures = []
    q = _queue(max_attempts=3)
    q.subscribe(lambda entry, error: failures.append(error))
    entry_id = q.enqueue(_report())
    statuses = []
    for _ in range(3):
        q.mark_in_flight(entry_id)
        statuses.append(q.mark_failed(entry_id, "timeout", retriable=True))
        entry = q.get(entry_id)
        if entry is not None:
            entry.next_attempt_at = 0
    assert statuses == [EntryStatus.PENDING, EntryStatus.PENDING, EntryStatus.FAILED_PERMANENT]
    assert len(failures) == 1
    assert "attempt budget exhausted (3)" in failures[0]


def test_raising_listener_does_not_block_removal():
    seen = []

    def bad(entry, error):
        raise RuntimeError("listener bug")

    q = _queue()
    q.subscribe(bad)
    q.subscribe(lambda entry, error: seen.append(entry.entry_id))
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    q.mark_failed(entry_id, "nope", retriable=False)
    assert seen == [entry_id]
    assert len(q) == 0


def test_unsubscribe():
    seen = []
    listener = lambda entry, error: seen.append(error)
    q = _queue()
    q.subscribe(listener)
    q.unsubscribe(listener)
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    q.mark_failed(entry_id, "nope", retriable=False)
    assert seen == []


# ── Durability ───────────────────────────────────────────────────────

def test_entries_survive_restart(tmp_path):
    db = tmp_path / "queue.db"
    q = _queue(SqliteStorage(db))
    ids = [q.enqueue(_report(t)) for t in ("a", "b")]
    q.close()

    reopened = _queue(SqliteStorage(db))
    assert [e.entry_id for e in reopened.entries()] == ids
    assert reopened.get(ids[0]).report.title == "a"
    assert reopened.peek_ready().entry_id == ids[0]
    reopened.close()


def test_in_flight_returns_to_pending_on_restart(tmp_path):
    db = tmp_path / "queue.db"
    q = _queue(SqliteStorage(db))
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    q.storage.close()     # crash: no orderly shutdown

    storage = SqliteStorage(db)
    reopened = _queue(storage)
    entry = reopened.get(entry_id)
    assert entry.status is EntryStatus.PENDING
    assert entry.report.attempts == 1
    assert storage.get(NAMESPACE, entry_id)["report"]["status"] == "pending"
    reopened.close()


def test_backoff_state_survives_restart(tmp_path):
    db = tmp_path / "queue.db"
    clock = Clock()
    q = _queue(SqliteStorage(db), clock=clock)
    entry_id = q.enqueue(_report())
    q.mark_in_flight(entry_id)
    q.mark_failed(entry_id, "503", retriable=True)
    q.close()

    reopened = _queue(SqliteStorage(db), clock=clock)
    entry = reopened.get(entry_id)
    assert entry.backoff_exponent == 1
    assert entry.next_attempt_at == pytest.approx(clock.now + 1.0)
    assert entry.last_error == "503"
    reopened.close()


def test_sequence_continues_after_restart(tmp_path):
    db = tmp_path / "queue.db"
    q = _queue(SqliteStorage(db))
    first = q.enqueue(_report("a"))
    q.close()

    reopened = _queue(SqliteStorage(db))
    second = reopened.enqueue(_report("b"))
    assert [e.entry_id for e in reopened.entries()] == [first, second]
    reopened.close()


def test_leftover_failed_entries_reported_on_open():
    storage = MemoryStorage()
    q = _queue(storage)
    entry_id = q.enqueue(_report())
    record = storage.get(NAMESPACE, entry_id)
    record["report"]["status"] = "failed_permanent"
    record["last_error"] = "400"
    storage.put(NAMESPACE, entry_id, record)

    failures = []
    reopened = PersistentQueue(storage, clock=Clock())
    reopened.subscribe(lambda entry, error: failures.append((entry.entry_id, error)))
    reopened.open()
    assert failures == [(entry_id, "400")]
    assert len(reopened) == 0
    assert storage.items(NAMESPACE) == []


def test_unreadable_record_dropped_on_open():
    storage = MemoryStorage()
    storage.put(NAMESPACE, "junk", {"nope": True})
    q = _queue(storage)
    assert len(q) == 0
    assert storage.items(NAMESPACE) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
