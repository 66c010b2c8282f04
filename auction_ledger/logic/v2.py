from __future__ import annotations

"""
auction_ledger.logic.v2
-----------------------

Second logic version. Layout v2 appends two auction fields:

    auction.bid_count    u64   (slot 11, default 0)
    auction.last_bid_at  u64   (slot 12, default 0)

Records written under v1 stay byte-identical for every v1 slot; the bundled
migration backfills the appended fields from the bid log. v2 also honours
`bidding.min_increment_bps`: a new bid must beat the highest bid by at least
that fraction (rounded up, never less than 1). With the default of 0 bidding
behaves exactly as in v1.
"""

from typing import Any, Dict

from ..layout import GENESIS_LAYOUT, U64
from ..migration import LayoutMigration
from ..store import LedgerTxn
from ..types import AuctionRecord, BidRecord
from .v1 import AuctionLogicV1

LAYOUT_V2 = GENESIS_LAYOUT.extended(2, {"auction": [("bid_count", U64, 0), ("last_bid_at", U64, 0)]})


def backfill_bid_stats(txn: LedgerTxn, kind: str, values: Dict[str, Any]) -> Dict[str, Any]:
    if kind != "auction":
        return values
    bids = txn.bids(values["auction_id"])
    values["bid_count"] = len(bids)
    values["last_bid_at"] = bids[-1].timestamp if bids else 0
    return values


MIGRATION_V2 = LayoutMigration(
    descriptor=LAYOUT_V2,
    backfill=backfill_bid_stats,
    description="append auction.bid_count and auction.last_bid_at, backfilled from the bid log",
)


class AuctionLogicV2(AuctionLogicV1):
    VERSION = "v2"
    LAYOUT = LAYOUT_V2
    MIGRATION = MIGRATION_V2

    ENTRYPOINTS = AuctionLogicV1.ENTRYPOINTS | {"bid_stats"}

    def minimum_next_bid(self, rec: AuctionRecord) -> int:
        if rec.highest_bid is None:
            return max(rec.reserve_price, 1)
        bps = self.bidding.min_increment_bps
        step = max(1, -(-rec.highest_bid * bps // 10_000))
        return rec.highest_bid + step

    def _record_bid(self, rec: AuctionRecord, bid: BidRecord) -> None:
        rec.extra["bid_count"] = int(rec.extra.get("bid_count", 0)) + 1
        rec.extra["last_bid_at"] = bid.timestamp

    def bid_stats(self, auction_id: int) -> Dict[str, int]:
        rec = self.store.get(auction_id)
        return {"bid_count": rec.extra.get("bid_count", 0), "last_bid_at": rec.extra.get("last_bid_at", 0)}


__all__ = ["AuctionLogicV2", "LAYOUT_V2", "MIGRATION_V2", "backfill_bid_stats"]
