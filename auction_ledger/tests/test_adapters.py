from __future__ import annotations

import json
import logging
import threading

import pytest

from auction_ledger import logging as llog
from auction_ledger.adapters import InMemoryFunds, ManualClock, RoleAccessControl
from auction_ledger.errors import InsufficientFunds, TransferRejected
from auction_ledger.interfaces import AccessControl, Action, Clock, FundTransfer
from auction_ledger.locks import KeyedLocks, UpgradeBarrier
from auction_ledger.metrics import render


def test_adapters_satisfy_protocols():
    assert isinstance(RoleAccessControl(), AccessControl)
    assert isinstance(ManualClock(), Clock)
    assert isinstance(InMemoryFunds(), FundTransfer)


def test_role_access_control():
    ac = RoleAccessControl(admins=["root"])
    assert ac.is_authorized("root", Action.UPGRADE)
    assert not ac.is_authorized("ops", "upgrade")
    ac.grant(Action.UPGRADE, "ops")
    assert ac.is_authorized("ops", "upgrade")
    ac.revoke("upgrade", "ops")
    ac.revoke("upgrade", "ops")
    assert not ac.is_authorized("ops", Action.UPGRADE)
    assert not ac.is_authorized("", "upgrade")


def test_funds_deposit_and_release():
    f = InMemoryFunds()
    f.fund("bob", 10)
    with pytest.raises(InsufficientFunds):
        f.deposit("native", "bob", 11)
    f.deposit("native", "bob", 10)
    assert (f.balance_of("bob"), f.custody()) == (0, 10)
    with pytest.raises(TransferRejected):
        f.release("native", "bob", 11)
    f.release("native", "bob", 10)
    assert f.balance_of("bob") == 10


def test_manual_clock_is_monotonic():
    c = ManualClock(5)
    assert c.advance(5) == 10
    with pytest.raises(ValueError):
        c.set(9)
    with pytest.raises(ValueError):
        c.advance(-1)


def test_keyed_locks_are_released():
    locks = KeyedLocks()
    with locks.hold(1):
        with locks.hold(1):
            assert len(locks) == 1
    assert len(locks) == 0


def test_barrier_blocks_new_readers_while_writer_waits():
    b = UpgradeBarrier()
    b.acquire_shared()
    entered = threading.Event()

    def writer():
        assert b.acquire_exclusive(timeout=5)
        b.release_exclusive()

    def reader():
        with b.shared():
            entered.set()

    w = threading.Thread(target=writer)
    w.start()
    while not b._writers_waiting:
        threading.Event().wait(0.01)
    r = threading.Thread(target=reader)
    r.start()
    assert not entered.wait(0.1)
    b.release_shared()
    w.join(5)
    r.join(5)
    assert entered.is_set()
    assert b.in_flight == 0


def test_bound_context_reaches_json_records():
    record = logging.LogRecord("auction_ledger.test", logging.INFO, __file__, 1, "hello", None, None)
    with llog.bound(deployment="0xabc", auction_id=7):
        out = json.loads(llog.JSONFormatter().format(record))
    assert out["msg"] == "hello"
    assert out["deployment"] == "0xabc"
    assert out["auction_id"] == 7


def test_metrics_render():
    body, ctype = render()
    assert b"auction_ledger_bids_accepted" in body
    assert ctype.startswith("text/plain")


def test_trace_scope_restores_context():
    prev = llog.context()
    with llog.trace_scope("abc123") as tid:
        assert tid == "abc123"
        with llog.trace_scope() as inner:
            assert inner == "abc123"
        assert llog.context()["trace_id"] == "abc123"
    assert llog.context() == prev
