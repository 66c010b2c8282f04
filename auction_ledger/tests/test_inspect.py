from __future__ import annotations

import json

from auction_ledger.inspect import Inspector
from auction_ledger.logic.v2 import MIGRATION_V2

from .conftest import mk_auction


def test_snapshot_reads_through_persisted_layout(coordinator, handle, assets, kv, clock):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 100)
    handle.place_bid(auction_id, "carol", 200)
    coordinator.upgrade(handle.identity, "v2", MIGRATION_V2, caller="admin")

    snap = Inspector(kv, handle.identity).snapshot()
    json.dumps(snap)
    assert snap["implementation"] == "v2"
    assert snap["layout_version"] == 2
    entry = snap["auctions"][str(auction_id)]
    assert entry["record"]["bid_count"] == 2
    assert [b["bidder"] for b in entry["bids"]] == ["bob", "carol"]
    assert entry["escrow"]["bob"]["balance"] == 100
    assert snap["proceeds"] == {}


def test_inspector_sees_other_deployments_separately(coordinator, handle, assets, kv):
    other = coordinator.handle(coordinator.deploy_initial("v1", deployer="admin"))
    mk_auction(handle, assets, index=1)
    assert Inspector(kv, other.identity).auctions() == {}
    assert list(Inspector(kv, handle.identity).auctions()) == [1]


def test_audit_flags_tampered_escrow_total(coordinator, handle, assets, kv):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 100)
    handle.place_bid(auction_id, "carol", 200)
    assert Inspector(kv, handle.identity).audit() == []

    store = coordinator.store(handle.identity)
    rec = store.get(auction_id)
    rec.escrowed_amount = 0
    store.put(auction_id, rec)

    rules = {v.rule for v in Inspector(kv, handle.identity).audit()}
    assert rules == {"escrowed_amount"}


def test_audit_flags_phantom_bid_and_proceeds(coordinator, handle, assets, kv):
    auction_id = mk_auction(handle, assets)
    store = coordinator.store(handle.identity)
    rec = store.get(auction_id)
    rec.highest_bid, rec.highest_bidder = 500, "mallory"
    store.put(auction_id, rec)
    store.credit_proceeds(auction_id, "seller", 10)

    violations = Inspector(kv, handle.identity).audit()
    assert {v.rule for v in violations} == {"funds", "proceeds", "bid_order"}
    assert all(v.auction_id == auction_id for v in violations)
    assert violations[0].to_dict()["auction_id"] == auction_id
