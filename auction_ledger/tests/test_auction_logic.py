from __future__ import annotations

from decimal import Decimal

import pytest

from auction_ledger.adapters import StaticPriceFeed
from auction_ledger.coordinator import UpgradeCoordinator
from auction_ledger.errors import (AlreadyFinal, AssetNotTransferable, AuctionExpired, AuctionHasBids, AuctionNotActive,
                                   BidTooLow, ErrorCategory, InsufficientEscrow, InsufficientFunds, InsufficientProceeds,
                                   InvalidAuctionParams, NotAssetOwner, NotFound, NotSeller, TooEarly,
                                   TransferRejected)
from auction_ledger.inspect import Inspector
from auction_ledger.metrics import REGISTRY
from auction_ledger.store import LedgerTxn
from auction_ledger.types import AssetRef, AuctionStatus, Phase

from .conftest import T0, balances, mk_auction


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _audit(h, kv):
    return Inspector(kv, h.identity).audit()


def _snapshot(kv):
    return dict(kv.iter_prefix(b""))


# ---------------------------------------------------------------- scenarios


def test_bid_below_reserve_then_at_reserve(handle, assets):
    auction_id = mk_auction(handle, assets, reserve=100, duration=3_600)
    before = _sample("auction_ledger_bids_rejected_total", reason="bid_too_low")

    with pytest.raises(BidTooLow) as ei:
        handle.place_bid(auction_id, "bob", 50)
    assert ei.value.details["minimum"] == 100
    assert handle.get_auction(auction_id).highest_bid is None
    assert _sample("auction_ledger_bids_rejected_total", reason="bid_too_low") == before + 1

    rec = handle.place_bid(auction_id, "bob", 100)
    assert rec.highest_bid == 100
    assert handle.get_auction(auction_id).highest_bidder == "bob"


def test_outbid_escrow_is_withdrawable_once(handle, assets, funds, kv):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 100)
    handle.place_bid(auction_id, "carol", 150)

    assert balances(handle, auction_id, "bob", "carol") == {"bob": 100, "carol": 0}
    assert handle.get_auction(auction_id).escrowed_amount == 100

    before = funds.balance_of("bob")
    assert handle.withdraw_escrow(auction_id, "bob") == 100
    assert funds.balance_of("bob") == before + 100
    assert handle.get_auction(auction_id).escrowed_amount == 0

    with pytest.raises(InsufficientEscrow):
        handle.withdraw_escrow(auction_id, "bob")
    assert funds.balance_of("bob") == before + 100
    assert _audit(handle, kv) == []


def test_settle_too_early_then_transfers_to_winner(handle, assets, clock, kv):
    auction_id = mk_auction(handle, assets, duration=3_600)
    handle.place_bid(auction_id, "bob", 120)

    with pytest.raises(TooEarly):
        handle.settle(auction_id)
    assert handle.get_auction(auction_id).phase is Phase.ACTIVE

    clock.advance(3_600)
    rec = handle.settle(auction_id)
    assert rec.phase is Phase.SETTLED
    assert assets.transfers == [(AssetRef("nft", 1), "seller", "bob")]
    assert assets.owner_of(AssetRef("nft", 1)) == "bob"
    assert handle.proceeds_balance(auction_id) == 120
    assert handle.auction_status(auction_id) is AuctionStatus.SETTLED

    before = _snapshot(kv)
    with pytest.raises(AlreadyFinal):
        handle.settle(auction_id)
    assert _snapshot(kv) == before
    assert len(assets.transfers) == 1
    assert _audit(handle, kv) == []


# ---------------------------------------------------------------- create


def test_create_requires_asset_ownership(handle, assets):
    assets.mint(AssetRef("nft", 9), "mallory")
    with pytest.raises(NotAssetOwner):
        handle.create_auction("seller", AssetRef("nft", 9), 100, T0, 60)
    with pytest.raises(NotAssetOwner):
        handle.create_auction("seller", ("nft", 10), 100, T0, 60)


@pytest.mark.parametrize(
    "args",
    [
        ("", ("nft", 1), 100, T0, 60),
        ("seller", ("nft", 1), -1, T0, 60),
        ("seller", ("nft", 1), 100, T0, 0),
        ("seller", ("nft", 1), 100, T0 - 1, 60),
        ("seller", ("nft",), 100, T0, 60),
        ("seller", ("nft", 1), 100, T0, 60, ""),
    ],
)
def test_create_rejects_invalid_params(handle, assets, args):
    assets.mint(AssetRef("nft", 1), "seller")
    with pytest.raises(InvalidAuctionParams):
        handle.create_auction(*args)


@pytest.mark.parametrize(
    "asset,reserve,start,duration",
    [
        (("nft", 1), 1 << 256, T0, 60),
        (("nft", 1), 100, 1 << 64, 60),
        (("nft", 1), 100, T0, 1 << 64),
        (("nft", 1), 100, (1 << 64) - 10, 60),
        (("nft", 1 << 64), 100, T0, 60),
    ],
)
def test_out_of_range_params_are_rejected_before_allocating(handle, assets, asset, reserve, start, duration):
    assets.mint(AssetRef("nft", 1), "seller")
    with pytest.raises(InvalidAuctionParams) as ei:
        handle.create_auction("seller", asset, reserve, start, duration)
    assert ei.value.category is ErrorCategory.VALIDATION
    assert mk_auction(handle, assets, index=2) == 1


def test_bid_beyond_u256_is_a_validation_error(handle, assets):
    auction_id = mk_auction(handle, assets)
    before = _sample("auction_ledger_bids_rejected_total", reason="invalid_params")
    with pytest.raises(InvalidAuctionParams):
        handle.place_bid(auction_id, "bob", 1 << 256)
    assert _sample("auction_ledger_bids_rejected_total", reason="invalid_params") == before + 1
    assert handle.bids(auction_id) == []
    assert handle.get_auction(auction_id).highest_bid is None


def test_auction_ids_are_unique_and_increasing(handle, assets):
    ids = [mk_auction(handle, assets, index=i) for i in range(1, 4)]
    assert ids == [1, 2, 3]


def test_future_auction_starts_created_and_activates_on_bid(handle, assets, clock):
    auction_id = mk_auction(handle, assets, start=T0 + 100, duration=60)
    assert handle.get_auction(auction_id).phase is Phase.CREATED
    assert handle.auction_status(auction_id) is AuctionStatus.CREATED

    with pytest.raises(AuctionNotActive):
        handle.place_bid(auction_id, "bob", 100)

    clock.advance(100)
    # views do not persist the observation
    assert handle.auction_status(auction_id) is AuctionStatus.ACTIVE
    assert handle.get_auction(auction_id).phase is Phase.CREATED

    handle.place_bid(auction_id, "bob", 100)
    assert handle.get_auction(auction_id).phase is Phase.ACTIVE


# ---------------------------------------------------------------- bidding


def test_equal_bid_does_not_displace_leader(handle, assets):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 150)
    with pytest.raises(BidTooLow):
        handle.place_bid(auction_id, "carol", 150)
    rec = handle.get_auction(auction_id)
    assert (rec.highest_bid, rec.highest_bidder) == (150, "bob")
    assert handle.minimum_bid(auction_id) == 151


def test_zero_reserve_still_needs_positive_bid(handle, assets):
    auction_id = mk_auction(handle, assets, reserve=0)
    with pytest.raises(BidTooLow):
        handle.place_bid(auction_id, "bob", 0)
    handle.place_bid(auction_id, "bob", 1)


def test_bid_after_end_is_expired(handle, assets, clock):
    auction_id = mk_auction(handle, assets, duration=60)
    clock.advance(60)
    assert handle.auction_status(auction_id) is AuctionStatus.EXPIRED
    with pytest.raises(AuctionExpired):
        handle.place_bid(auction_id, "bob", 500)
    # expired is derived; the stored phase stays active
    assert handle.get_auction(auction_id).phase is Phase.ACTIVE


def test_leader_can_raise_own_bid(handle, assets, kv):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 100)
    handle.place_bid(auction_id, "bob", 200)
    assert handle.escrow_balance(auction_id, "bob") == 100
    assert [b.amount for b in handle.bids(auction_id)] == [100, 200]
    assert _audit(handle, kv) == []


def test_failed_deposit_leaves_no_trace(handle, assets, funds):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 100)
    with pytest.raises(InsufficientFunds):
        handle.place_bid(auction_id, "pauper", 200)

    rec = handle.get_auction(auction_id)
    assert (rec.highest_bid, rec.highest_bidder, rec.escrowed_amount) == (100, "bob", 0)
    assert handle.escrow_balance(auction_id, "bob") == 0
    assert len(handle.bids(auction_id)) == 1


def test_bid_on_missing_auction(handle):
    with pytest.raises(NotFound):
        handle.place_bid(99, "bob", 100)


def test_failed_commit_releases_the_deposit(handle, assets, funds, monkeypatch):
    auction_id = mk_auction(handle, assets)
    before = funds.balance_of("bob")
    compensated = _sample("auction_ledger_compensations_total", op="place_bid")

    def broken_commit(self):
        raise OSError("disk full")

    monkeypatch.setattr(LedgerTxn, "commit", broken_commit)
    with pytest.raises(OSError):
        handle.place_bid(auction_id, "bob", 100)
    monkeypatch.undo()

    assert funds.balance_of("bob") == before
    assert funds.custody() == 0
    assert handle.get_auction(auction_id).highest_bid is None
    assert _sample("auction_ledger_compensations_total", op="place_bid") == compensated + 1


# ---------------------------------------------------------------- settle / cancel


def test_settle_without_bids_cancels(handle, assets, clock):
    auction_id = mk_auction(handle, assets, duration=60)
    clock.advance(61)
    rec = handle.settle(auction_id)
    assert rec.phase is Phase.CANCELLED
    assert assets.transfers == []
    assert assets.owner_of(AssetRef("nft", 1)) == "seller"


@pytest.mark.parametrize("finish", ["settle", "cancel"])
def test_cancelled_auction_is_left_untouched_by_settle(handle, assets, clock, kv, finish):
    auction_id = mk_auction(handle, assets, duration=60)
    if finish == "cancel":
        handle.cancel_auction(auction_id, "seller")
    clock.advance(61)
    if finish == "settle":
        handle.settle(auction_id)
    assert handle.get_auction(auction_id).phase is Phase.CANCELLED

    before = _snapshot(kv)
    with pytest.raises(AlreadyFinal):
        handle.settle(auction_id)
    with pytest.raises(AlreadyFinal):
        handle.cancel_auction(auction_id, "seller")
    assert _snapshot(kv) == before
    assert assets.transfers == []


def test_settle_aborts_when_asset_is_locked(handle, assets, clock):
    auction_id = mk_auction(handle, assets, duration=60)
    handle.place_bid(auction_id, "bob", 100)
    clock.advance(60)
    assets.lock(AssetRef("nft", 1))
    with pytest.raises(AssetNotTransferable):
        handle.settle(auction_id)
    assert handle.get_auction(auction_id).phase is Phase.ACTIVE
    assert handle.proceeds_balance(auction_id) == 0

    assets.unlock(AssetRef("nft", 1))
    assert handle.settle(auction_id).phase is Phase.SETTLED


def test_cancel_rules(handle, assets):
    first = mk_auction(handle, assets, index=1)
    with pytest.raises(NotSeller):
        handle.cancel_auction(first, "bob")
    assert handle.cancel_auction(first, "seller").phase is Phase.CANCELLED
    with pytest.raises(AlreadyFinal):
        handle.cancel_auction(first, "seller")
    with pytest.raises(AuctionNotActive):
        handle.place_bid(first, "bob", 100)

    second = mk_auction(handle, assets, index=2)
    handle.place_bid(second, "bob", 100)
    with pytest.raises(AuctionHasBids):
        handle.cancel_auction(second, "seller")


# ---------------------------------------------------------------- proceeds


def test_seller_withdraws_proceeds_once(handle, assets, clock, funds, kv):
    auction_id = mk_auction(handle, assets, duration=60)
    handle.place_bid(auction_id, "bob", 100)
    handle.place_bid(auction_id, "carol", 300)
    clock.advance(60)
    handle.settle(auction_id)

    with pytest.raises(NotSeller):
        handle.withdraw_proceeds(auction_id, "carol")
    assert handle.withdraw_proceeds(auction_id, "seller") == 300
    assert funds.balance_of("seller") == 300
    with pytest.raises(InsufficientProceeds):
        handle.withdraw_proceeds(auction_id, "seller")

    handle.withdraw_escrow(auction_id, "bob")
    assert funds.custody() == 0
    assert _audit(handle, kv) == []


def test_rejected_release_keeps_escrow(handle, assets, funds):
    auction_id = mk_auction(handle, assets)
    handle.place_bid(auction_id, "bob", 100)
    handle.place_bid(auction_id, "carol", 200)
    funds.reject("bob")
    with pytest.raises(TransferRejected):
        handle.withdraw_escrow(auction_id, "bob")
    assert handle.escrow_balance(auction_id, "bob") == 100

    funds.accept("bob")
    assert handle.withdraw_escrow(auction_id, "bob") == 100


# ---------------------------------------------------------------- views


def test_quote_uses_price_feed(kv, assets, funds, access, clock, config):
    coord = UpgradeCoordinator(
        kv, assets=assets, funds=funds, access=access, clock=clock, config=config,
        prices=StaticPriceFeed({"native": "2.5"}),
    )
    h = coord.handle(coord.deploy_initial("v1", deployer="admin"))
    auction_id = mk_auction(h, assets, reserve=40)
    q = h.quote(auction_id)
    assert (q.basis, q.amount, q.value) == ("reserve", 40, Decimal("100.0"))

    h.place_bid(auction_id, "bob", 100)
    assert h.quote(auction_id).value == Decimal("250.0")


def test_quote_without_feed_is_not_found(handle, assets):
    auction_id = mk_auction(handle, assets)
    with pytest.raises(NotFound):
        handle.quote(auction_id)


def test_unknown_entrypoint(handle):
    assert hasattr(handle, "place_bid")
    assert not hasattr(handle, "bid_stats")
    assert not hasattr(handle, "plcae_bid")
    with pytest.raises(AttributeError):
        handle._private
    with pytest.raises(AttributeError):
        handle.call("bid_stats", 1)
