"""Pluggable key -> record storage for the queue and the duplicate index.

Records are JSON-serializable dicts grouped by namespace.  Every operation
is atomic on its own: a crash between two calls never leaves a half-written
record behind.

Usage:
    storage = SqliteStorage("~/.bugscrub/queue.db")
    storage.put("queue", "entry-1", {"status": "pending"})
    storage.get("queue", "entry-1")
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from .errors import StorageError

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class Storage(Protocol):
    """What the queue and duplicate filter need from a backend."""

    def get(self, namespace: str, key: str) -> Record | None: ...
    def put(self, namespace: str, key: str, record: Record) -> None: ...
    def delete(self, namespace: str, key: str) -> None: ...
    def items(self, namespace: str) -> list[tuple[str, Record]]: ...
    def close(self) -> None: ...


class MemoryStorage:
    """Volatile storage. Survives nothing, but handy for tests and previews."""

    __slots__ = ("_data",)

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Record]] = {}

    def get(self, namespace: str, key: str) -> Record | None:
        record = self._data.get(namespace, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    def put(self, namespace: str, key: str, record: Record) -> None:
        # Round-trip through JSON so the same things fail here as on disk
        try:
            snapshot = json.loads(json.dumps(record))
        except (TypeError, ValueError) as exc:
            raise StorageError(f"record {namespace}/{key} is not serializable: {exc}") from exc
        self._data.setdefault(namespace, {})[key] = snapshot

    def delete(self, namespace: str, key: str) -> None:
        self._data.get(namespace, {}).pop(key, None)

    def items(self, namespace: str) -> list[tuple[str, Record]]:
        return [(k, copy.deepcopy(v)) for k, v in self._data.get(namespace, {}).items()]

    def close(self) -> None:
        pass


_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL DEFAULT (julianday('now')),
    PRIMARY KEY (namespace, key)
);
"""


class SqliteStorage:
    """Durable storage backed by SQLite (WAL mode)."""

    __slots__ = ("_db_path", "_db")

    def __init__(self, db_path: str | Path = "bugscrub.db") -> None:
        self._db_path = Path(db_path).expanduser()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._db.execute("PRAGMA journal_mode=WAL;")
            self._db.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"cannot open {self._db_path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._db_path

    def _write(self, sql: str, params: tuple) -> None:
        try:
            with self._db:      # one transaction per call
                self._db.execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"write failed: {exc}") from exc

    def get(self, namespace: str, key: str) -> Record | None:
        try:
            row = self._db.execute(
                "SELECT value FROM records WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"read failed: {exc}") from exc
        return json.loads(row[0]) if row else None

    def put(self, namespace: str, key: str, record: Record) -> None:
        try:
            value = json.dumps(record, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"record {namespace}/{key} is not serializable: {exc}") from exc
        self._write(
            "INSERT OR REPLACE INTO records (namespace, key, value, updated_at) "
            "VALUES (?, ?, ?, julianday('now'))",
            (namespace, key, value),
        )

    def delete(self, namespace: str, key: str) -> None:
        self._write("DELETE FROM records WHERE namespace = ? AND key = ?", (namespace, key))

    def items(self, namespace: str) -> list[tuple[str, Record]]:
        try:
            rows = self._db.execute(
                "SELECT key, value FROM records WHERE namespace = ?", (namespace,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"read failed: {exc}") from exc
        out: list[tuple[str, Record]] = []
        for key, value in rows:
            try:
                out.append((key, json.loads(value)))
            except ValueError:
                logger.warning("Skipping corrupt record %s/%s", namespace, key)
        return out

    def close(self) -> None:
        self._db.close()
