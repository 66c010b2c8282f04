from __future__ import annotations

"""
SQLite-backed KV store
======================

Embedded KV using SQLite (BLOB keys & values), implementing the
`KV` / `ReadOnlyKV` / `Batch` protocols from `auction_ledger.db.kv`.

- Table schema: kv(k BLOB PRIMARY KEY, v BLOB NOT NULL)
- Keys/values are raw bytes; ordering is lexicographic (memcmp).
- Prefix scans use a bounded range (prefix_hi) plus a guard on
  `substr(k, 1, len(prefix)) = prefix`.

Threading:
- One connection is shared by every thread (`check_same_thread=False`). An
  internal re-entrant lock serializes statements, and a batch holds that lock
  from BEGIN to COMMIT/ROLLBACK, so readers on other threads never observe a
  half-applied batch.
"""

import logging
import os
import sqlite3
import threading
from typing import Iterator, List, Optional, Tuple, Union

from .kv import KV, Batch

log = logging.getLogger(__name__)

DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "temp_store": "MEMORY",
    "foreign_keys": "OFF",
}


def _apply_pragmas(conn: sqlite3.Connection, pragmas: Optional[dict] = None) -> None:
    p = dict(DEFAULT_PRAGMAS)
    if pragmas:
        p.update(pragmas)
    cur = conn.cursor()
    for name in ("journal_mode", "synchronous", "temp_store", "foreign_keys"):
        cur.execute("PRAGMA %s=%s" % (name, p[name]))
    cur.close()


def _migrate(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv (
            k BLOB PRIMARY KEY,
            v BLOB NOT NULL
        )
        """
    )


def _prefix_hi(prefix: bytes) -> Optional[bytes]:
    """
    Smallest byte string strictly greater than every key starting with `prefix`,
    or None when no such value exists (prefix is all 0xFF).

    Example: b"ab\x01" -> b"ab\x02"; b"\xff\xff" -> None
    """
    if not prefix:
        return None
    p = bytearray(prefix)
    for i in range(len(p) - 1, -1, -1):
        if p[i] != 0xFF:
            p[i] += 1
            del p[i + 1 :]
            return bytes(p)
    return None


_UPSERT = "INSERT INTO kv(k, v) VALUES(?, ?) ON CONFLICT(k) DO UPDATE SET v=excluded.v"


class SQLiteBatch(Batch):
    __slots__ = ("_conn", "_lock", "_open")

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock) -> None:
        self._conn = conn
        self._lock = lock
        self._open = False

    def __enter__(self) -> "SQLiteBatch":
        if self._open:
            raise RuntimeError("batch already open (nested batches not supported)")
        self._lock.acquire()
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except BaseException:
            self._lock.release()
            raise
        self._open = True
        return self

    def put(self, key: bytes, value: bytes) -> None:
        if not self._open:
            raise RuntimeError("batch not open")
        self._conn.execute(_UPSERT, (memoryview(key), memoryview(value)))

    def delete(self, key: bytes) -> None:
        if not self._open:
            raise RuntimeError("batch not open")
        self._conn.execute("DELETE FROM kv WHERE k = ?", (memoryview(key),))

    def commit(self) -> None:
        if not self._open:
            return
        self._conn.execute("COMMIT")
        self._open = False

    def rollback(self) -> None:
        if not self._open:
            return
        self._conn.execute("ROLLBACK")
        self._open = False

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        try:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        finally:
            self._open = False
            self._lock.release()
        return None


def _open_connection(
    path: Union[str, "os.PathLike[str]"],
    *,
    pragmas: Optional[dict] = None,
    create: bool = True,
) -> sqlite3.Connection:
    path_str = str(path)
    if path_str != ":memory:":
        if not create and not os.path.exists(path_str):
            raise FileNotFoundError(f"SQLite KV not found at {path_str}")
        parent = os.path.dirname(os.path.abspath(path_str))
        if create and parent:
            os.makedirs(parent, exist_ok=True)

    conn = sqlite3.connect(
        path_str,
        detect_types=0,
        isolation_level=None,      # autocommit; batches BEGIN explicitly
        check_same_thread=False,
    )
    _apply_pragmas(conn, pragmas)
    _migrate(conn)
    log.debug("sqlite kv opened", extra={"path": path_str})
    return conn


class SQLiteKV(KV):
    """
    SQLite-backed KV. Safe for multi-threaded access; see the module notes.

    Use `open_sqlite_kv(path)` to construct.
    """

    __slots__ = ("_conn", "_lock")

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()

    # --- ReadOnlyKV ---

    def get(self, key: bytes) -> Optional[bytes]:
        with self._lock:
            cur = self._conn.execute("SELECT v FROM kv WHERE k = ?", (memoryview(key),))
            row = cur.fetchone()
            cur.close()
        return bytes(row[0]) if row is not None else None

    def has(self, key: bytes) -> bool:
        with self._lock:
            cur = self._conn.execute("SELECT 1 FROM kv WHERE k = ? LIMIT 1", (memoryview(key),))
            row = cur.fetchone()
            cur.close()
        return row is not None

    def iter_prefix(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        """
        Iterate keys with the given binary prefix in lexicographic order.

        Rows are fetched under the connection lock and then yielded, so a slow
        consumer never blocks writers.
        """
        hi = _prefix_hi(prefix)
        if not prefix:
            sql = "SELECT k, v FROM kv ORDER BY k"
            args = ()
        elif hi is not None:
            sql = (
                "SELECT k, v FROM kv "
                "WHERE k >= ? AND k < ? AND substr(k,1,?) = ? "
                "ORDER BY k"
            )
            args = (memoryview(prefix), memoryview(hi), len(prefix), memoryview(prefix))
        else:
            sql = "SELECT k, v FROM kv WHERE substr(k,1,?) = ? ORDER BY k"
            args = (len(prefix), memoryview(prefix))

        with self._lock:
            cur = self._conn.execute(sql, args)
            rows: List[Tuple[bytes, bytes]] = [(bytes(k), bytes(v)) for k, v in cur]
            cur.close()
        yield from rows

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- KV ---

    def put(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._conn.execute(_UPSERT, (memoryview(key), memoryview(value)))

    def delete(self, key: bytes) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE k = ?", (memoryview(key),))

    def batch(self) -> Batch:
        return SQLiteBatch(self._conn, self._lock)


def open_sqlite_kv(
    path: Union[str, "os.PathLike[str]"],
    *,
    pragmas: Optional[dict] = None,
    create: bool = True,
) -> SQLiteKV:
    """
    Open (or create) a SQLite KV at `path`.

    - `create=False` will raise if the DB file does not exist.
    """
    return SQLiteKV(_open_connection(path, pragmas=pragmas, create=create))


__all__ = [
    "SQLiteKV",
    "SQLiteBatch",
    "open_sqlite_kv",
]
