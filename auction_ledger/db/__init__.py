from __future__ import annotations

"""
auction_ledger.db
=================

Thin facade for the key–value backend behind the ledger store.

URIs
----
- "sqlite:///path/to/ledger.db"   → SQLite file
- "sqlite:///:memory:"            → in-memory SQLite (tests)
- "memory://"                     → alias of "sqlite:///:memory:"
- Bare path                       → treated as a sqlite file path

Example
-------
>>> from auction_ledger.db import open_kv
>>> kv = open_kv("memory://")
>>> with kv.batch() as b:
...     b.put(b"l:key", b"hello")
>>> kv.get(b"l:key")
b'hello'
"""

from typing import Tuple

from .kv import KV, Batch, Prefix, ReadOnlyKV
from . import sqlite as _sqlite_backend


def _parse_uri(uri: str) -> Tuple[str, str]:
    """Parse a DB URI into (backend, path)."""
    u = uri.strip()
    if u.startswith("sqlite:///"):
        return ("sqlite", u[len("sqlite:///") :])
    if u.startswith("memory://"):
        return ("memory", "")
    if "://" in u:
        return ("unknown", u)
    return ("sqlite", u or ":memory:")


def open_kv(uri: str, create: bool = True) -> KV:
    """
    Open a KV database by URI. See module docstring for supported forms.

    Raises:
        ValueError for unsupported URIs.
    """
    backend, path = _parse_uri(uri)

    if backend == "memory":
        return _sqlite_backend.open_sqlite_kv(":memory:", create=True)

    if backend == "sqlite":
        return _sqlite_backend.open_sqlite_kv(path or ":memory:", create=create)

    raise ValueError(f"Unsupported DB backend in URI: {uri!r}")


__all__ = [
    "KV",
    "ReadOnlyKV",
    "Batch",
    "Prefix",
    "open_kv",
]
