from __future__ import annotations

"""
auction_ledger.logic.v1
-----------------------

Genesis auction logic.

Lifecycle: Created → Active → {Settled, Cancelled}. An Active auction whose
window has closed is "expired": a derived status, never a stored phase.
Created becomes Active the first time an operation observes
`now >= start_time`.

Every mutating operation runs under the auction's lock and follows the same
shape: stage every write (validated against the active layout), call the
external collaborator at most once, then commit the staged writes in one
batch. A collaborator failure therefore aborts with no ledger change. If the
commit itself fails after the collaborator moved value, the move is reversed
and the error re-raised.

Funds accounting per auction:

    Σ accepted bids == Σ escrow.balance + Σ escrow.withdrawn + held
    held = highest_bid                       while open
    held = proceeds.pending + proceeds.withdrawn   once settled
"""

import logging
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional

from ..adapters import SystemClock
from ..config import BiddingConfig
from ..errors import (AlreadyFinal, AuctionExpired, AuctionHasBids, AuctionNotActive, BidTooLow,
                      InsufficientEscrow, InvalidAuctionParams, LayoutMismatch, LedgerError, NotAssetOwner,
                      NotFound, NotSeller, TooEarly)
from ..interfaces import AssetRegistry, Clock, FundTransfer, PriceFeed
from ..layout import GENESIS_LAYOUT, U64, U256, LayoutDescriptor, conforms
from ..metrics import AUCTIONS_CREATED, BIDS_ACCEPTED, BIDS_REJECTED, COMPENSATIONS, SETTLEMENTS, WITHDRAWALS
from ..migration import LayoutMigration
from ..store import LedgerStore, LedgerTxn
from ..types import NATIVE_TOKEN, AssetRef, AuctionRecord, AuctionStatus, BidRecord, Phase, Quote

log = logging.getLogger(__name__)


class AuctionLogicV1:
    VERSION = "v1"
    LAYOUT: LayoutDescriptor = GENESIS_LAYOUT
    MIGRATION: Optional[LayoutMigration] = None

    ENTRYPOINTS: FrozenSet[str] = frozenset(
        {
            "create_auction",
            "place_bid",
            "settle",
            "cancel_auction",
            "withdraw_escrow",
            "withdraw_proceeds",
            "get_auction",
            "auction_status",
            "bids",
            "escrow_balance",
            "proceeds_balance",
            "minimum_bid",
            "quote",
        }
    )

    def __init__(
        self,
        store: LedgerStore,
        *,
        assets: AssetRegistry,
        funds: FundTransfer,
        clock: Optional[Clock] = None,
        prices: Optional[PriceFeed] = None,
        bidding: Optional[BiddingConfig] = None,
    ) -> None:
        self.store = store
        self.assets = assets
        self.funds = funds
        self.clock = clock or SystemClock()
        self.prices = prices
        self.bidding = bidding or BiddingConfig()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(version={self.VERSION!r}, identity={self.store.identity!r})"

    @classmethod
    def missing_fields(cls, layout: LayoutDescriptor) -> List[str]:
        """Fields this logic reads or writes that `layout` does not declare."""
        missing: List[str] = []
        for rec in cls.LAYOUT.records:
            try:
                have = set(layout.record(rec.kind).names)
            except LayoutMismatch:
                have = set()
            missing.extend(f"{rec.kind}.{n}" for n in rec.names if n not in have)
        return missing

    # ------------------------------------------------------------------
    # helpers & hooks
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return int(self.clock.now())

    def _observe(self, txn: LedgerTxn, rec: AuctionRecord, now: int) -> AuctionRecord:
        if rec.phase is Phase.CREATED and now >= rec.start_time:
            rec.phase = Phase.ACTIVE
            txn.put_auction(rec)
        return rec

    def minimum_next_bid(self, rec: AuctionRecord) -> int:
        if rec.highest_bid is None:
            return max(rec.reserve_price, 1)
        return rec.highest_bid + 1

    def _record_bid(self, rec: AuctionRecord, bid: BidRecord) -> None:
        """Hook for versions that keep extra per-auction bid state."""

    def _fields(self, rec: AuctionRecord, **more: Any) -> Dict[str, Any]:
        return {"auction_id": rec.auction_id, "logic_version": self.VERSION, **more}

    # ------------------------------------------------------------------
    # mutating operations
    # ------------------------------------------------------------------

    def create_auction(
        self,
        seller: str,
        asset_ref: Any,
        reserve_price: int,
        start_time: int,
        duration: int,
        payment_token: str = NATIVE_TOKEN,
    ) -> int:
        try:
            asset = AssetRef.from_value(asset_ref)
        except (TypeError, ValueError) as e:
            raise InvalidAuctionParams("asset_ref must be (registry, index)", asset_ref=repr(asset_ref)) from e
        now = self._now()
        if not isinstance(seller, str) or not seller:
            raise InvalidAuctionParams("seller must be a non-empty identity")
        if not asset.registry or not conforms(U64, asset.index):
            raise InvalidAuctionParams("asset_ref must name a registry and a u64 index", asset=str(asset))
        if not conforms(U256, reserve_price):
            raise InvalidAuctionParams("reserve_price must be a u256 integer", reserve_price=reserve_price)
        if not conforms(U64, duration) or duration == 0:
            raise InvalidAuctionParams("duration must be a positive u64", duration=duration)
        if not conforms(U64, start_time) or start_time < now:
            raise InvalidAuctionParams("start_time must be a u64 not in the past", start_time=start_time, now=now)
        if not conforms(U64, start_time + duration):
            raise InvalidAuctionParams("auction end time overflows u64", start_time=start_time, duration=duration)
        if not isinstance(payment_token, str) or not payment_token:
            raise InvalidAuctionParams("payment_token must be the native sentinel or a token reference")

        owner = self.assets.owner_of(asset)
        if owner != seller:
            raise NotAssetOwner(account=seller, asset=str(asset), owner=owner)

        auction_id = self.store.allocate_auction_id()
        with self.store.locks.hold(auction_id):
            txn = self.store.txn()
            rec = AuctionRecord(
                auction_id=auction_id,
                seller=seller,
                asset_ref=asset,
                reserve_price=reserve_price,
                start_time=start_time,
                duration=duration,
                payment_token=payment_token,
                phase=Phase.ACTIVE if start_time <= now else Phase.CREATED,
                extra=txn.blank_extras("auction"),
            )
            txn.put_auction(rec)
            txn.commit()

        AUCTIONS_CREATED.labels(logic=self.VERSION).inc()
        log.info(
            "auction created",
            extra=self._fields(rec, seller=seller, asset=str(asset), reserve_price=reserve_price, phase=rec.phase.label),
        )
        return auction_id

    def place_bid(self, auction_id: int, bidder: str, amount: int) -> AuctionRecord:
        try:
            return self._place_bid(auction_id, bidder, amount)
        except LedgerError as e:
            BIDS_REJECTED.labels(reason=e.reason).inc()
            raise

    def _place_bid(self, auction_id: int, bidder: str, amount: int) -> AuctionRecord:
        if not isinstance(bidder, str) or not bidder:
            raise InvalidAuctionParams("bidder must be a non-empty identity")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAuctionParams("bid amount must be an integer", amount=repr(amount))
        if amount > 0 and not conforms(U256, amount):
            raise InvalidAuctionParams("bid amount exceeds u256", amount=amount)

        with self.store.locks.hold(auction_id):
            txn = self.store.txn()
            now = self._now()
            rec = self._observe(txn, txn.get_auction(auction_id), now)
            if rec.phase is not Phase.ACTIVE:
                raise AuctionNotActive(auction_id=auction_id, phase=rec.phase.label)
            if now >= rec.end_time:
                raise AuctionExpired(auction_id=auction_id, end_time=rec.end_time, now=now)
            minimum = self.minimum_next_bid(rec)
            if amount < minimum:
                raise BidTooLow(auction_id=auction_id, amount=amount, minimum=minimum)

            prev_bid, prev_bidder = rec.highest_bid, rec.highest_bidder
            if prev_bid is not None and prev_bidder is not None:
                txn.credit_escrow(auction_id, prev_bidder, prev_bid)
                rec.escrowed_amount += prev_bid
            bid = BidRecord(auction_id, bidder, amount, now, extra=txn.blank_extras("bid"))
            seq = txn.append_bid(bid)
            rec.highest_bid = amount
            rec.highest_bidder = bidder
            self._record_bid(rec, bid)
            txn.put_auction(rec)

            self.funds.deposit(rec.payment_token, bidder, amount)
            try:
                txn.commit()
            except Exception:
                log.error("commit failed after deposit; releasing it", exc_info=True, extra=self._fields(rec))
                COMPENSATIONS.labels(op="place_bid").inc()
                self.funds.release(rec.payment_token, bidder, amount)
                raise

        BIDS_ACCEPTED.labels(logic=self.VERSION).inc()
        log.info(
            "bid accepted",
            extra=self._fields(rec, bidder=bidder, amount=amount, seq=seq, outbid=prev_bidder),
        )
        return rec

    def settle(self, auction_id: int) -> AuctionRecord:
        with self.store.locks.hold(auction_id):
            txn = self.store.txn()
            now = self._now()
            rec = self._observe(txn, txn.get_auction(auction_id), now)
            if rec.phase.is_final:
                raise AlreadyFinal(auction_id=auction_id, phase=rec.phase.label)
            if now < rec.end_time:
                raise TooEarly(auction_id=auction_id, end_time=rec.end_time, now=now)

            if rec.highest_bid is None or rec.highest_bidder is None:
                rec.phase = Phase.CANCELLED
                txn.put_auction(rec)
                txn.commit()
                outcome = "no_bids"
            else:
                rec.phase = Phase.SETTLED
                txn.credit_proceeds(auction_id, rec.seller, rec.highest_bid)
                txn.put_auction(rec)
                self.assets.transfer(rec.asset_ref, rec.seller, rec.highest_bidder)
                try:
                    txn.commit()
                except Exception:
                    log.error("commit failed after asset transfer; reversing it", exc_info=True, extra=self._fields(rec))
                    COMPENSATIONS.labels(op="settle").inc()
                    self.assets.transfer(rec.asset_ref, rec.highest_bidder, rec.seller)
                    raise
                outcome = "settled"

        SETTLEMENTS.labels(outcome=outcome).inc()
        log.info(
            "auction finalized",
            extra=self._fields(rec, outcome=outcome, winner=rec.highest_bidder, amount=rec.highest_bid),
        )
        return rec

    def cancel_auction(self, auction_id: int, caller: str) -> AuctionRecord:
        with self.store.locks.hold(auction_id):
            txn = self.store.txn()
            rec = self._observe(txn, txn.get_auction(auction_id), self._now())
            if rec.phase.is_final:
                raise AlreadyFinal(auction_id=auction_id, phase=rec.phase.label)
            if caller != rec.seller:
                raise NotSeller(auction_id=auction_id, caller=caller)
            if rec.highest_bid is not None:
                raise AuctionHasBids(auction_id=auction_id)
            rec.phase = Phase.CANCELLED
            txn.put_auction(rec)
            txn.commit()

        SETTLEMENTS.labels(outcome="cancelled").inc()
        log.info("auction cancelled", extra=self._fields(rec, caller=caller))
        return rec

    def withdraw_escrow(self, auction_id: int, bidder: str) -> int:
        with self.store.locks.hold(auction_id):
            txn = self.store.txn()
            rec = txn.get_auction(auction_id)
            esc = txn.get_escrow(auction_id, bidder)
            if esc.balance == 0:
                raise InsufficientEscrow(auction_id=auction_id, account=bidder, balance=0, requested=0)
            amount = esc.balance
            txn.debit_escrow(auction_id, bidder, amount)
            rec.escrowed_amount -= amount
            txn.put_auction(rec)

            self.funds.release(rec.payment_token, bidder, amount)
            try:
                txn.commit()
            except Exception:
                log.error(
                    "commit failed after escrow release; ledger still owes the bidder",
                    exc_info=True,
                    extra=self._fields(rec, bidder=bidder, amount=amount),
                )
                raise

        WITHDRAWALS.labels(kind="escrow").inc()
        log.info("escrow withdrawn", extra=self._fields(rec, bidder=bidder, amount=amount))
        return amount

    def withdraw_proceeds(self, auction_id: int, seller: str) -> int:
        with self.store.locks.hold(auction_id):
            txn = self.store.txn()
            rec = txn.get_auction(auction_id)
            if seller != rec.seller:
                raise NotSeller(auction_id=auction_id, caller=seller)
            pro = txn.get_proceeds(auction_id)
            amount = pro.pending if pro is not None else 0
            txn.debit_proceeds(auction_id, seller, amount)

            self.funds.release(rec.payment_token, seller, amount)
            try:
                txn.commit()
            except Exception:
                log.error(
                    "commit failed after proceeds release; ledger still owes the seller",
                    exc_info=True,
                    extra=self._fields(rec, amount=amount),
                )
                raise

        WITHDRAWALS.labels(kind="proceeds").inc()
        log.info("proceeds withdrawn", extra=self._fields(rec, seller=seller, amount=amount))
        return amount

    # ------------------------------------------------------------------
    # views (read-only; never persist the Created→Active observation)
    # ------------------------------------------------------------------

    def get_auction(self, auction_id: int) -> AuctionRecord:
        return self.store.get(auction_id)

    def auction_status(self, auction_id: int) -> AuctionStatus:
        return self.store.get(auction_id).status(self._now())

    def bids(self, auction_id: int) -> List[BidRecord]:
        self.store.get(auction_id)
        return self.store.bids(auction_id)

    def escrow_balance(self, auction_id: int, account: str) -> int:
        return self.store.get_escrow(auction_id, account).balance

    def proceeds_balance(self, auction_id: int) -> int:
        pro = self.store.get_proceeds(auction_id)
        return pro.pending if pro is not None else 0

    def minimum_bid(self, auction_id: int) -> int:
        return self.minimum_next_bid(self.store.get(auction_id))

    def quote(self, auction_id: int) -> Quote:
        rec = self.store.get(auction_id)
        if self.prices is None:
            raise NotFound("price feed", auction_id=auction_id)
        basis, amount = (
            ("highest_bid", rec.highest_bid) if rec.highest_bid is not None else ("reserve", rec.reserve_price)
        )
        unit = self.prices.latest_price(rec.payment_token)
        return Quote(
            auction_id=auction_id,
            token=rec.payment_token,
            basis=basis,
            amount=amount,
            unit_price=unit,
            value=Decimal(amount) * unit,
        )


__all__ = ["AuctionLogicV1"]
