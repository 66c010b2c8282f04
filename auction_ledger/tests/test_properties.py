from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from auction_ledger.adapters import InMemoryAssetRegistry, InMemoryFunds, ManualClock, RoleAccessControl
from auction_ledger.coordinator import UpgradeCoordinator
from auction_ledger.db import open_kv
from auction_ledger.errors import LedgerError
from auction_ledger.inspect import Inspector
from auction_ledger.logic.v2 import MIGRATION_V2

from .conftest import ACCOUNTS, T0, mk_auction

BIDDERS = st.sampled_from(ACCOUNTS)

# (bidder, amount) attempts, an optional upgrade point, then settle/withdraw everything
ATTEMPTS = st.lists(st.tuples(BIDDERS, st.integers(min_value=0, max_value=2_000)), max_size=25)


def _world():
    kv = open_kv("memory://")
    assets = InMemoryAssetRegistry()
    funds = InMemoryFunds()
    for a in ACCOUNTS:
        funds.fund(a, 10_000_000)
    clock = ManualClock(T0)
    coord = UpgradeCoordinator(kv, assets=assets, funds=funds, access=RoleAccessControl(admins=["admin"]), clock=clock)
    h = coord.handle(coord.deploy_initial("v1", deployer="admin"))
    return kv, assets, funds, clock, coord, h


@settings(max_examples=40, deadline=None)
@given(attempts=ATTEMPTS, upgrade_at=st.one_of(st.none(), st.integers(min_value=0, max_value=25)))
def test_highest_bid_strictly_increases(attempts, upgrade_at):
    kv, assets, funds, clock, coord, h = _world()
    try:
        auction_id = mk_auction(h, assets, reserve=50)
        accepted = []
        for i, (bidder, amount) in enumerate(attempts):
            if i == upgrade_at:
                coord.upgrade(h.identity, "v2", MIGRATION_V2, caller="admin")
            prev = h.get_auction(auction_id).highest_bid
            try:
                h.place_bid(auction_id, bidder, amount)
            except LedgerError:
                assert h.get_auction(auction_id).highest_bid == prev
                continue
            assert prev is None or amount > prev
            assert amount >= 50
            accepted.append(amount)
        assert accepted == sorted(set(accepted))
        assert [b.amount for b in h.bids(auction_id)] == accepted
    finally:
        kv.close()


@settings(max_examples=40, deadline=None)
@given(attempts=ATTEMPTS, withdraw_early=st.lists(BIDDERS, max_size=4))
def test_funds_are_conserved(attempts, withdraw_early):
    kv, assets, funds, clock, coord, h = _world()
    try:
        auction_id = mk_auction(h, assets, reserve=1, duration=100)
        for i, (bidder, amount) in enumerate(attempts):
            try:
                h.place_bid(auction_id, bidder, amount)
            except LedgerError:
                pass
            if i % 5 == 4 and withdraw_early:
                try:
                    h.withdraw_escrow(auction_id, withdraw_early[i % len(withdraw_early)])
                except LedgerError:
                    pass
            assert Inspector(kv, h.identity).audit() == []

        deposited = sum(b.amount for b in h.bids(auction_id))
        assert funds.custody() == deposited - sum(amt for _, _, amt in funds.releases)

        clock.advance(100)
        rec = h.settle(auction_id)
        for a in ACCOUNTS:
            if h.escrow_balance(auction_id, a):
                h.withdraw_escrow(auction_id, a)
        if rec.highest_bid is not None:
            h.withdraw_proceeds(auction_id, "seller")

        assert funds.custody() == 0
        total = sum(funds.balance_of(a) for a in ACCOUNTS) + funds.balance_of("seller")
        assert total == 10_000_000 * len(ACCOUNTS)
        assert Inspector(kv, h.identity).audit() == []
    finally:
        kv.close()
