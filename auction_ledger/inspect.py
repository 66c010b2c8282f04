from __future__ import annotations

"""
auction_ledger.inspect
----------------------

Operator inspection of a deployment's persisted state, independent of the
logic version bound to it. Everything is decoded through the persisted layout
descriptor only.

- snapshot(): auction_id → record, auction_id → ordered bids,
  (auction_id, account) → escrow, auction_id → proceeds
- audit(): re-checks the ledger invariants for every auction

Audit rules
-----------
escrowed_amount   auction.escrowed_amount == Σ escrow.balance
funds             Σ bids == Σ escrow.balance + Σ escrow.withdrawn + held
proceeds          settled: proceeds.pending + proceeds.withdrawn == highest_bid
                  otherwise: no proceeds
bid_order         bid amounts strictly increase; the last bid is the highest
cancelled         a cancelled auction has no accepted bid
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from .db.kv import KV
from .store import LedgerStore
from .types import AuctionRecord, BidRecord, EscrowRecord, Phase, ProceedsRecord


@dataclass(frozen=True)
class Violation:
    auction_id: int
    rule: str
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {"auction_id": self.auction_id, "rule": self.rule, "detail": self.detail}


class Inspector:
    def __init__(self, kv: KV, identity: str) -> None:
        self.store = LedgerStore(kv, identity)

    @property
    def identity(self) -> str:
        return self.store.identity

    def auctions(self) -> Dict[int, AuctionRecord]:
        return {a.auction_id: a for a in self.store.scan_auctions()}

    def bids(self) -> Dict[int, List[BidRecord]]:
        out: Dict[int, List[BidRecord]] = defaultdict(list)
        for b in self.store.scan_bids():
            out[b.auction_id].append(b)
        return dict(out)

    def escrow(self) -> Dict[Tuple[int, str], EscrowRecord]:
        return {(e.auction_id, e.account): e for e in self.store.scan_escrow()}

    def proceeds(self) -> Dict[int, ProceedsRecord]:
        return {p.auction_id: p for p in self.store.scan_proceeds()}

    def snapshot(self) -> Dict[str, Any]:
        layout = self.store.refresh_layout()
        bids = self.bids()
        escrow: Dict[int, Dict[str, Any]] = defaultdict(dict)
        for (auction_id, account), e in self.escrow().items():
            escrow[auction_id][account] = e.to_fields()
        return {
            "identity": self.identity,
            "implementation": self.store.implementation(),
            "layout_version": layout.version,
            "layout_digest": layout.digest(),
            "auctions": {
                str(auction_id): {
                    "record": rec.to_fields(),
                    "bids": [b.to_fields() for b in bids.get(auction_id, [])],
                    "escrow": escrow.get(auction_id, {}),
                }
                for auction_id, rec in self.auctions().items()
            },
            "proceeds": {str(k): p.to_fields() for k, p in self.proceeds().items()},
        }

    def audit(self) -> List[Violation]:
        self.store.refresh_layout()
        bids = self.bids()
        proceeds = self.proceeds()
        escrow_by_auction: Dict[int, List[EscrowRecord]] = defaultdict(list)
        for e in self.store.scan_escrow():
            escrow_by_auction[e.auction_id].append(e)

        out: List[Violation] = []
        for auction_id, rec in self.auctions().items():
            abids = bids.get(auction_id, [])
            escs = escrow_by_auction.get(auction_id, [])
            balance = sum(e.balance for e in escs)
            withdrawn = sum(e.withdrawn for e in escs)
            deposited = sum(b.amount for b in abids)
            held = rec.highest_bid or 0
            pro = proceeds.get(auction_id)

            if rec.escrowed_amount != balance:
                out.append(Violation(auction_id, "escrowed_amount", f"recorded {rec.escrowed_amount}, escrow balances sum to {balance}"))
            if deposited != balance + withdrawn + held:
                out.append(Violation(auction_id, "funds", f"bids {deposited} != escrow {balance} + withdrawn {withdrawn} + held {held}"))
            if rec.phase is Phase.SETTLED:
                paid = (pro.pending + pro.withdrawn) if pro is not None else 0
                if paid != held:
                    out.append(Violation(auction_id, "proceeds", f"settled for {held} but proceeds total {paid}"))
            elif pro is not None and (pro.pending or pro.withdrawn):
                out.append(Violation(auction_id, "proceeds", f"proceeds recorded for {rec.phase.label} auction"))

            amounts = [b.amount for b in abids]
            if any(b <= a for a, b in zip(amounts, amounts[1:])):
                out.append(Violation(auction_id, "bid_order", f"bid amounts not strictly increasing: {amounts}"))
            if abids:
                last = abids[-1]
                if rec.highest_bid != last.amount or rec.highest_bidder != last.bidder:
                    out.append(Violation(auction_id, "bid_order", "highest bid does not match the last accepted bid"))
            elif rec.highest_bid is not None:
                out.append(Violation(auction_id, "bid_order", "highest bid recorded without any bid"))
            if rec.phase is Phase.CANCELLED and abids:
                out.append(Violation(auction_id, "cancelled", "cancelled auction has accepted bids"))
        return out


__all__ = ["Inspector", "Violation"]
