"""Persistent queue of reports awaiting delivery.

Entry lifecycle:

    pending -> in_flight -> delivered          (removed)
                         -> failed_permanent   (listeners told, then removed)
                         -> pending            (transient failure, backoff)

Every state change is written through to storage before it is visible in
memory, so a restart resumes from whatever was last persisted.  Entries found
``in_flight`` on load go back to ``pending``: delivery is at-least-once.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from typing import Callable

from .errors import StorageError
from .storage import Storage
from .types import BugReport, EntryStatus, QueueEntry

logger = logging.getLogger(__name__)

NAMESPACE = "queue"

FailureListener = Callable[[QueueEntry, str], None]


class PersistentQueue:
    """Durable FIFO of QueueEntry records with exponential backoff."""

    def __init__(
        self,
        storage: Storage,
        *,
        max_attempts: int = 5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 30000,
        jitter: float = 0.1,
        max_queue_size: int | None = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.storage = storage
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.jitter = jitter
        self.max_queue_size = max_queue_size
        self.clock = clock
        self.rng = rng
        self._entries: dict[str, QueueEntry] = {}
        self._listeners: list[FailureListener] = []
        self._next_seq = 0
        self._opened = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> PersistentQueue:
        """Load persisted entries. Subscribe listeners before calling this."""
        self._entries.clear()
        leftovers: list[QueueEntry] = []
        for key, record in self.storage.items(NAMESPACE):
            try:
                entry = QueueEntry.from_record(record)
            except (KeyError, ValueError, TypeError):
                logger.warning("Dropping unreadable queue record %s", key)
                self.storage.delete(NAMESPACE, key)
                continue
            if entry.status is EntryStatus.FAILED_PERMANENT:
                leftovers.append(entry)
                continue
            if entry.status is not EntryStatus.PENDING:
                # in_flight at shutdown/crash: not known to be sent
                entry.report.status = EntryStatus.PENDING
                self._persist(entry)
            self._entries[entry.entry_id] = entry

        self._next_seq = max(
            [e.seq for e in self._entries.values()] + [e.seq for e in leftovers],
            default=-1,
        ) + 1
        self._opened = True

        for entry in leftovers:
            self._finish_failed(entry, entry.last_error or "failed before restart")
        logger.info("Queue opened with %d pending entr(y/ies)", len(self._entries))
        return self

    def close(self) -> None:
        self._opened = False
        self._entries.clear()
        self.storage.close()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: FailureListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: FailureListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _persist(self, entry: QueueEntry) -> None:
        self.storage.put(NAMESPACE, entry.entry_id, entry.to_record())

    def _require(self, entry_id: str) -> QueueEntry:
        if not self._opened:
            raise StorageError("queue is not open")
        try:
            return self._entries[entry_id]
        except KeyError:
            raise KeyError(f"unknown queue entry {entry_id!r}") from None

    def enqueue(self, report: BugReport) -> str:
        """Persist a report as a new pending entry. Raises StorageError on failure."""
        if not self._opened:
            raise StorageError("queue is not open")
        if self.max_queue_size is not None and len(self._entries) >= self.max_queue_size:
            pending = [e for e in self._entries.values() if e.status is EntryStatus.PENDING]
            if not pending:
                raise StorageError(f"queue full ({self.max_queue_size}) and every entry is in flight")
            oldest = min(pending, key=lambda e: e.seq)
            logger.warning("Queue full (%d), dropping oldest entry %s", self.max_queue_size, oldest.entry_id)
            oldest.report.status = EntryStatus.FAILED_PERMANENT
            self._finish_failed(oldest, "dropped: queue full")

        now = self.clock()
        report.status = EntryStatus.PENDING
        entry = QueueEntry(
            entry_id=uuid.uuid4().hex,
            report=report,
            seq=self._next_seq,
            enqueued_at=now,
            next_attempt_at=now,
        )
        self._persist(entry)    # raises before the entry becomes visible
        self._next_seq += 1
        self._entries[entry.entry_id] = entry
        logger.debug("Enqueued %s (queue size %d)", entry.entry_id, len(self._entries))
        return entry.entry_id

    def peek_ready(self, now: float | None = None) -> QueueEntry | None:
        """Oldest pending entry whose next attempt is due."""
        now = self.clock() if now is None else now
        ready = [
            e for e in self._entries.values()
            if e.status is EntryStatus.PENDING and e.next_attempt_at <= now
        ]
        return min(ready, key=lambda e: e.seq) if ready else None

    def next_wakeup(self) -> float | None:
        """Earliest next_attempt_at among pending entries."""
        times = [e.next_attempt_at for e in self._entries.values() if e.status is EntryStatus.PENDING]
        return min(times) if times else None

    def mark_in_flight(self, entry_id: str) -> QueueEntry:
        entry = self._require(entry_id)
        if entry.status is not EntryStatus.PENDING:
            raise ValueError(f"entry {entry_id} is {entry.status.value}, not pending")
        entry.report.status = EntryStatus.IN_FLIGHT
        entry.report.attempts += 1
        self._persist(entry)
        return entry

    def mark_pending(self, entry_id: str) -> None:
        """Return an in-flight entry to pending without counting a failure."""
        entry = self._require(entry_id)
        entry.report.status = EntryStatus.PENDING
        entry.report.attempts = max(entry.report.attempts - 1, 0)
        self._persist(entry)

    def mark_delivered(self, entry_id: str) -> None:
        entry = self._require(entry_id)
        self.storage.delete(NAMESPACE, entry_id)
        entry.report.status = EntryStatus.DELIVERED
        del self._entries[entry_id]
        logger.debug("Delivered %s", entry_id)

    def backoff_delay_ms(self, exponent: int) -> float:
        """Delay before retry number ``exponent`` (1-based), jittered and capped."""
        base = self.backoff_base_ms * (2 ** max(exponent - 1, 0))
        jittered = base * (1 + self.jitter * (self.rng() * 2 - 1))
        return min(jittered, self.backoff_max_ms)

    def mark_failed(
        self,
        entry_id: str,
        error: str,
        retriable: bool,
        *,
        retry_after: float | None = None,
    ) -> EntryStatus:
        """Record a failed attempt. Returns the entry's resulting status."""
        entry = self._require(entry_id)
        entry.last_error = error

        if retriable and entry.report.attempts < self.max_attempts:
            entry.backoff_exponent += 1
            if retry_after is not None:
                delay_ms = min(max(retry_after, 0.0) * 1000, self.backoff_max_ms)
            else:
                delay_ms = self.backoff_delay_ms(entry.backoff_exponent)
            entry.next_attempt_at = self.clock() + delay_ms / 1000
            entry.report.status = EntryStatus.PENDING
            self._persist(entry)
            logger.warning(
                "Entry %s failed (attempt %d/%d), retrying in %.1fs: %s",
                entry_id, entry.report.attempts, self.max_attempts, delay_ms / 1000, error,
            )
            return EntryStatus.PENDING

        if retriable:
            error = f"attempt budget exhausted ({self.max_attempts}): {error}"
            entry.last_error = error
        entry.report.status = EntryStatus.FAILED_PERMANENT
        self._persist(entry)
        self._finish_failed(entry, error)
        return EntryStatus.FAILED_PERMANENT

    def _finish_failed(self, entry: QueueEntry, error: str) -> None:
        logger.error("Entry %s failed permanently: %s", entry.entry_id, error)
        for listener in list(self._listeners):
            try:
                listener(entry, error)
            except Exception:
                logger.exception("Failure listener raised for entry %s", entry.entry_id)
        self.storage.delete(NAMESPACE, entry.entry_id)
        self._entries.pop(entry.entry_id, None)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> QueueEntry | None:
        return self._entries.get(entry_id)

    def entries(self) -> list[QueueEntry]:
        return sorted(self._entries.values(), key=lambda e: e.seq)

    def __len__(self) -> int:
        return len(self._entries)
