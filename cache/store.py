"""
cache/store.py -- SQLite-backed expiring key/value cache for counters.

Holds short-lived integer counters (failed login attempts per client IP)
that must survive a worker restart but not forever. Every entry carries an
absolute expiry; expired entries read as absent and are removed lazily or
by purge_expired().

increment() is a single upsert statement inside an IMMEDIATE transaction,
so two concurrent failures from the same IP can never collapse into one.

Usage:
    cache = CounterCache()
    cache.increment("login_attempts_ip:10.0.0.7", ttl=1800)   # -> 1
    cache.get("login_attempts_ip:10.0.0.7")                    # -> 1
    cache.forget("login_attempts_ip:10.0.0.7")
    cache.purge_expired()
"""

import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Union

_DEFAULT_DB = Path(__file__).parent / "pawndesk_cache.db"

_DDL = """
CREATE TABLE IF NOT EXISTS counters (
    key         TEXT PRIMARY KEY,
    value       INTEGER NOT NULL,
    expires_at  REAL NOT NULL
);
"""

_UPSERT_INCREMENT = """
INSERT INTO counters (key, value, expires_at) VALUES (?, 1, ?)
ON CONFLICT(key) DO UPDATE SET
    value = CASE WHEN counters.expires_at <= ? THEN 1 ELSE counters.value + 1 END,
    expires_at = excluded.expires_at
"""


class CounterCache:
    def __init__(
        self,
        db_path: Union[Path, str] = _DEFAULT_DB,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        # One connection is shared by the worker threads; the lock keeps
        # their transactions from interleaving on it.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)

    def get(self, key: str) -> Optional[int]:
        """Return the stored value for key, or None if absent or expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM counters WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at <= self._clock():
                self._conn.execute("DELETE FROM counters WHERE key = ?", (key,))
                return None
            return value

    def put(self, key: str, value: int, ttl: float) -> None:
        """Store value for key, replacing any existing entry. ttl is in seconds."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO counters (key, value, expires_at) VALUES (?, ?, ?)",
                (key, int(value), self._clock() + ttl),
            )

    def increment(self, key: str, ttl: float) -> int:
        """Atomically add one to key and push its expiry to now + ttl.

        An expired entry restarts at 1. Returns the value after the increment.
        """
        now = self._clock()
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute(_UPSERT_INCREMENT, (key, now + ttl, now))
                (value,) = self._conn.execute("SELECT value FROM counters WHERE key = ?", (key,)).fetchone()
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
        return value

    def forget(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM counters WHERE key = ?", (key,))

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM counters WHERE expires_at <= ?", (self._clock(),))
            return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
