from __future__ import annotations

"""
auction_ledger.locks
--------------------

Concurrency primitives owned by the ledger store (they outlive any logic
version bound to it):

- KeyedLocks: one re-entrant lock per key (auction id). Operations on the same
  auction serialize; distinct auctions proceed independently. Entries are
  reference counted and dropped once nobody holds or waits on them.

- UpgradeBarrier: writer-preferring readers/writer lock. Every ledger operation
  holds it shared; an upgrade takes it exclusive, which drains in-flight
  operations and blocks new ones until the rebind is done. Once a writer is
  waiting, new readers queue behind it so an upgrade cannot starve.

Usage
-----
    with store.barrier.shared():
        with store.locks.hold(auction_id):
            ...

    if not store.barrier.acquire_exclusive(timeout=5.0):
        raise UpgradeBusy(...)
    try:
        ...
    finally:
        store.barrier.release_exclusive()
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.refs = 0


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class UpgradeBarrier:
    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._readers

    def acquire_shared(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_shared(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    @contextmanager
    def shared(self) -> Iterator[None]:
        self.acquire_shared()
        try:
            yield
        finally:
            self.release_shared()

    def acquire_exclusive(self, timeout: Optional[float] = None) -> bool:
        """Drain readers and take the barrier; False if `timeout` elapses first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        return False
                    self._cond.wait(remaining)
                self._writer = True
                return True
            finally:
                self._writers_waiting -= 1
                # wake queued readers if we gave up
                self._cond.notify_all()

    def release_exclusive(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


__all__ = ["KeyedLocks", "UpgradeBarrier"]
