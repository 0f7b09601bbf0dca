"""Durable key-value port with SQLite and in-memory implementations."""

from __future__ import annotations

import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import StorageError, StorageQuotaExceededError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """String records addressed by string keys.

    Writes are synchronous. ``set`` raises StorageQuotaExceededError when the
    record does not fit and StorageError on any other failure.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        pass

    @abstractmethod
    def usage_bytes(self) -> int:
        pass

    def close(self) -> None:
        pass


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed record store."""

    def __init__(self, db_path: Path | str, quota_bytes: int = 0):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL
            );
        """)
        self.conn.commit()

    def get(self, key: str) -> str | None:
        try:
            row = self.conn.execute("SELECT value FROM records WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        try:
            if self.quota_bytes:
                used = self.conn.execute(
                    "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) FROM records WHERE key != ?",
                    (key,),
                ).fetchone()[0]
                size = len(value.encode("utf-8"))
                if used + size > self.quota_bytes:
                    raise StorageQuotaExceededError(
                        f"Writing {key} ({size:,} bytes) exceeds quota of {self.quota_bytes:,} bytes"
                    )
            self.conn.execute(
                """INSERT INTO records (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (key, value, time.time()),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.conn.execute("DELETE FROM records WHERE key = ?", (key,))
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        rows = self.conn.execute(
            "SELECT key FROM records WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
        return [r["key"] for r in rows]

    def usage_bytes(self) -> int:
        return self.conn.execute(
            "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) FROM records"
        ).fetchone()[0]

    def close(self):
        self.conn.close()


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store with the same contract, for tests and ephemeral sessions.

    Set ``fail_writes`` to make every write raise StorageError.
    """

    def __init__(self, quota_bytes: int = 0):
        self.quota_bytes = quota_bytes
        self.fail_writes = False
        self.records: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.records.get(key)

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StorageError(f"Write to {key} failed")
        if self.quota_bytes:
            used = sum(len(v.encode("utf-8")) for k, v in self.records.items() if k != key)
            size = len(value.encode("utf-8"))
            if used + size > self.quota_bytes:
                raise StorageQuotaExceededError(
                    f"Writing {key} ({size:,} bytes) exceeds quota of {self.quota_bytes:,} bytes"
                )
        self.records[key] = value

    def delete(self, key: str) -> None:
        if self.fail_writes:
            raise StorageError(f"Delete of {key} failed")
        self.records.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.records if k.startswith(prefix))

    def usage_bytes(self) -> int:
        return sum(len(v.encode("utf-8")) for v in self.records.values())
