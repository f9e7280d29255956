"""Duplicate filter — suppresses reports already seen within a retention window.

The window is per fingerprint and starts at its first sighting; expired
fingerprints are evicted lazily when looked up.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from typing import Callable, Protocol

from .storage import Storage

logger = logging.getLogger(__name__)

NAMESPACE = "dedupe"
_WS = re.compile(r"\s+")


class Fingerprintable(Protocol):
    title: str
    description: str
    stack: str | None


def _normalize(value: str | None) -> str:
    return _WS.sub(" ", (value or "").strip().lower())


def fingerprint(report: Fingerprintable) -> str:
    """Stable hash of a report's normalized title, description and stack."""
    composite = "|".join((
        _normalize(report.title),
        _normalize(report.description),
        _normalize(report.stack),
    ))
    return hashlib.sha256(composite.encode("utf-8")).hexdigest()


class DuplicateFilter:
    """Fingerprint index with a per-fingerprint retention window."""

    def __init__(
        self,
        storage: Storage,
        *,
        window_hours: float = 24.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.window_seconds = window_hours * 3600
        self.max_entries = max_entries
        self.clock = clock

    def _live(self, fp: str, now: float) -> dict | None:
        record = self.storage.get(NAMESPACE, fp)
        if record is None:
            return None
        if now - record["first_seen_at"] >= self.window_seconds:
            self.storage.delete(NAMESPACE, fp)
            logger.debug("Evicted expired fingerprint %s", fp[:12])
            return None
        return record

    def should_suppress(self, fp: str, now: float | None = None) -> bool:
        now = self.clock() if now is None else now
        return self._live(fp, now) is not None

    def record(self, fp: str, now: float | None = None) -> int:
        """Record a sighting. Returns the fingerprint's count in the window."""
        now = self.clock() if now is None else now
        record = self._live(fp, now)
        if record is None:
            self._evict_overflow()
            record = {"first_seen_at": now, "count": 0}
        record["count"] += 1
        self.storage.put(NAMESPACE, fp, record)
        if record["count"] > 1:
            logger.info("Duplicate report %s seen %d times", fp[:12], record["count"])
        return record["count"]

    def stats(self, fp: str) -> dict | None:
        return self.storage.get(NAMESPACE, fp)

    def _evict_overflow(self) -> None:
        items = self.storage.items(NAMESPACE)
        if len(items) < self.max_entries:
            return
        items.sort(key=lambda kv: kv[1]["first_seen_at"])
        for key, _ in items[: len(items) - self.max_entries + 1]:
            self.storage.delete(NAMESPACE, key)

    def clear(self) -> None:
        for key, _ in self.storage.items(NAMESPACE):
            self.storage.delete(NAMESPACE, key)
