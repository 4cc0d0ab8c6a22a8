"""
cache/store.py -- SQLite-backed expiring key/value store.

Holds short-lived security state that must outlive a single request but not
the token it describes: blacklisted access-token IDs, consumed MFA challenge
IDs, emailed one-time codes and failed-login counters. Every entry carries
its own absolute expiry; reads treat expired rows as absent and
purge_expired() trims them in bulk.

Single-use semantics rely on SQLite rowcounts: delete() and add() report
whether *this* call changed the row, so two concurrent consumers of the same
key cannot both win.

Usage:
    store = ExpiringStore()
    store.set("jwt:blacklist:abc", "1", ttl=900)
    store.exists("jwt:blacklist:abc")        # True until the TTL passes
    store.incr("login_attempt:a@b.c", ttl=900)
    store.purge_expired()                    # call periodically
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional, Union

_DEFAULT_DB = Path(__file__).parent / "folio_cache.db"

_DDL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class ExpiringStore:
    def __init__(self, db_path: Union[Path, str] = _DEFAULT_DB) -> None:
        uri = str(db_path).startswith("file:")
        self._conn = sqlite3.connect(db_path, check_same_thread=False, uri=uri)
        # One connection shared by the thread pool; serialise access to it.
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        """Return the value for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_store WHERE key = ? AND expires_at > ?",
                (key, time.time()),
            ).fetchone()
        return row[0] if row is not None else None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: str, ttl: float) -> None:
        """Store value under key for ttl seconds, replacing any existing entry."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, time.time() + ttl),
            )
            self._conn.commit()

    def add(self, key: str, value: str, ttl: float) -> bool:
        """Store value only if key is absent (or expired). Returns True if stored."""
        now = time.time()
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE key = ? AND expires_at <= ?", (key, now))
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, now + ttl),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def delete(self, key: str) -> bool:
        """Remove key. Returns True if a live entry was removed by this call."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM kv_store WHERE key = ? AND expires_at > ?",
                (key, time.time()),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def incr(self, key: str, ttl: float) -> int:
        """Increment an integer counter and return the new value.

        The expiry is set when the counter is created and left alone on later
        increments, so the window is fixed from the first hit.
        """
        now = time.time()
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE key = ? AND expires_at <= ?", (key, now))
            self._conn.execute(
                "INSERT OR IGNORE INTO kv_store (key, value, expires_at) VALUES (?, '0', ?)",
                (key, now + ttl),
            )
            self._conn.execute(
                "UPDATE kv_store SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT) WHERE key = ?",
                (key,),
            )
            row = self._conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            self._conn.commit()
        return int(row[0])

    def ttl(self, key: str) -> float:
        """Seconds until key expires, 0 if absent or expired."""
        with self._lock:
            row = self._conn.execute("SELECT expires_at FROM kv_store WHERE key = ?", (key,)).fetchone()
        if row is None:
            return 0.0
        return max(0.0, row[0] - time.time())

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM kv_store WHERE expires_at <= ?", (time.time(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
