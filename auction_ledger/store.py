from __future__ import annotations

"""
auction_ledger.store
--------------------

Ledger store: owns every persisted auction, bid, escrow and proceeds record of
one deployment (addressed by its stable identity) on top of the KV interface.

Rules
-----
- Every write is validated against a layout descriptor when it is staged; a
  record whose shape does not match fails with LayoutMismatch and nothing of
  the unit of work is written.
- Mutations go through a `LedgerTxn`: writes are staged in an overlay (reads
  see them), then land in ONE KV batch on `commit()`.
- Nothing is ever deleted. Bids are append-only; escrow and proceeds entries
  are kept at zero for audit.
- No implicit iteration: logic reads records by key. The `scan_*` methods exist
  for upgrade-time revalidation and operator inspection.

The per-auction locks and the upgrade barrier live here so they survive any
swap of the logic bound to the deployment.
"""

import dataclasses
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple

import cbor2

from .db.kv import KV, LEDGER, META, be_u32, be_u64, from_be
from .errors import InsufficientEscrow, InsufficientProceeds, LayoutMismatch, NotFound
from .layout import LayoutDescriptor, decode_record, encode_record
from .locks import KeyedLocks, UpgradeBarrier
from .types import RECORD_TYPES, AuctionRecord, BidRecord, EscrowRecord, ProceedsRecord

log = logging.getLogger(__name__)

KIND_TAGS: Dict[str, bytes] = {
    "auction": b"auc",
    "bid": b"bid",
    "escrow": b"esc",
    "proceeds": b"pro",
}


def _tag(kind: str) -> bytes:
    return KIND_TAGS.get(kind, kind.encode("utf-8"))


class LedgerTxn:
    """Unit of work over one deployment's records."""

    def __init__(self, store: "LedgerStore", layout: LayoutDescriptor) -> None:
        self.store = store
        self.layout = layout
        self._staged: Dict[bytes, bytes] = {}
        self._staged_layout: Optional[LayoutDescriptor] = None
        self._closed = False

    # ---------------- internals ----------------

    def _key(self, kind: str, *parts: Any) -> bytes:
        return LEDGER.key(self.store.identity, _tag(kind), *parts)

    def _read(self, key: bytes) -> Optional[bytes]:
        if key in self._staged:
            return self._staged[key]
        return self.store.kv.get(key)

    def _stage(self, key: bytes, value: bytes) -> None:
        if self._closed:
            raise RuntimeError("transaction already closed")
        self._staged[key] = value

    def _load(self, kind: str, key: bytes) -> Optional[Dict[str, Any]]:
        raw = self._read(key)
        if raw is None:
            return None
        return decode_record(kind, raw, self.layout)

    def _write(self, key: bytes, record: Any) -> None:
        self._stage(key, encode_record(record.KIND, record.to_fields(), self.layout))

    def _iter(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        merged = dict(self.store.kv.iter_prefix(prefix))
        merged.update({k: v for k, v in self._staged.items() if k.startswith(prefix)})
        for k in sorted(merged):
            yield k, merged[k]

    def blank_extras(self, kind: str) -> Dict[str, Any]:
        """Defaults for the fields of `kind` that the record dataclass does not model."""
        modeled = {f.name for f in dataclasses.fields(RECORD_TYPES[kind])}
        return {f.name: f.default for f in self.layout.record(kind).fields if f.name not in modeled}

    # ---------------- auctions ----------------

    def find_auction(self, auction_id: int) -> Optional[AuctionRecord]:
        values = self._load("auction", self._key("auction", be_u64(auction_id)))
        return AuctionRecord.from_fields(values) if values is not None else None

    def get_auction(self, auction_id: int) -> AuctionRecord:
        rec = self.find_auction(auction_id)
        if rec is None:
            raise NotFound("auction", auction_id=auction_id, identity=self.store.identity)
        return rec

    def put_auction(self, record: AuctionRecord) -> None:
        self._write(self._key("auction", be_u64(record.auction_id)), record)

    # ---------------- bids ----------------

    def append_bid(self, bid: BidRecord) -> int:
        seq_key = META.key(self.store.identity, b"bidSeq", be_u64(bid.auction_id))
        raw = self._read(seq_key)
        seq = from_be(raw) if raw else 0
        self._write(self._key("bid", be_u64(bid.auction_id), be_u32(seq)), bid)
        self._stage(seq_key, be_u32(seq + 1))
        return seq

    def bids(self, auction_id: int) -> List[BidRecord]:
        prefix = self._key("bid", be_u64(auction_id))
        return [BidRecord.from_fields(decode_record("bid", v, self.layout)) for _, v in self._iter(prefix)]

    # ---------------- escrow ----------------

    def get_escrow(self, auction_id: int, account: str) -> EscrowRecord:
        values = self._load("escrow", self._key("escrow", be_u64(auction_id), account))
        if values is None:
            return EscrowRecord(auction_id, account, extra=self.blank_extras("escrow"))
        return EscrowRecord.from_fields(values)

    def credit_escrow(self, auction_id: int, account: str, amount: int) -> EscrowRecord:
        if amount < 0:
            raise ValueError("escrow credit must be non-negative")
        esc = self.get_escrow(auction_id, account)
        esc.balance += amount
        self._write(self._key("escrow", be_u64(auction_id), account), esc)
        return esc

    def debit_escrow(self, auction_id: int, account: str, amount: int) -> EscrowRecord:
        esc = self.get_escrow(auction_id, account)
        if amount < 0 or esc.balance < amount:
            raise InsufficientEscrow(auction_id=auction_id, account=account, balance=esc.balance, requested=amount)
        esc.balance -= amount
        esc.withdrawn += amount
        self._write(self._key("escrow", be_u64(auction_id), account), esc)
        return esc

    # ---------------- proceeds ----------------

    def get_proceeds(self, auction_id: int) -> Optional[ProceedsRecord]:
        values = self._load("proceeds", self._key("proceeds", be_u64(auction_id)))
        return ProceedsRecord.from_fields(values) if values is not None else None

    def credit_proceeds(self, auction_id: int, seller: str, amount: int) -> ProceedsRecord:
        if amount < 0:
            raise ValueError("proceeds credit must be non-negative")
        pro = self.get_proceeds(auction_id) or ProceedsRecord(auction_id, seller, extra=self.blank_extras("proceeds"))
        pro.pending += amount
        self._write(self._key("proceeds", be_u64(auction_id)), pro)
        return pro

    def debit_proceeds(self, auction_id: int, seller: str, amount: int) -> ProceedsRecord:
        pro = self.get_proceeds(auction_id)
        pending = pro.pending if pro is not None else 0
        if pro is None or amount <= 0 or pending < amount:
            raise InsufficientProceeds(auction_id=auction_id, seller=seller, pending=pending)
        pro.pending -= amount
        pro.withdrawn += amount
        self._write(self._key("proceeds", be_u64(auction_id)), pro)
        return pro

    # ---------------- deployment metadata ----------------

    def stage_layout(self, descriptor: LayoutDescriptor) -> None:
        key = META.key(self.store.identity, b"layout", be_u32(descriptor.version))
        existing = self._read(key)
        if existing is not None and existing != descriptor.encode():
            raise LayoutMismatch(
                f"layout v{descriptor.version} already recorded with different content",
                version=descriptor.version,
            )
        self._stage(key, descriptor.encode())
        self._staged_layout = descriptor

    def stage_implementation(self, logic_version: str) -> None:
        self._stage(META.key(self.store.identity, b"impl"), logic_version.encode("utf-8"))

    def stage_upgrade_entry(self, entry: Dict[str, Any]) -> int:
        seq = len(self.store.upgrade_history())
        self._stage(META.key(self.store.identity, b"upgrade", be_u32(seq)), cbor2.dumps(entry, canonical=True))
        return seq

    def stage_raw(self, key: bytes, value: bytes) -> None:
        self._stage(key, value)

    def rewrite(self, kind: str, key: bytes, values: Dict[str, Any]) -> None:
        """Stage `values` at `key` re-encoded under this transaction's layout."""
        self._stage(key, encode_record(kind, values, self.layout))

    # ---------------- lifecycle ----------------

    @property
    def pending(self) -> int:
        return len(self._staged)

    def commit(self) -> int:
        if self._closed:
            raise RuntimeError("transaction already closed")
        with self.store.kv.batch() as b:
            for k, v in self._staged.items():
                b.put(k, v)
        self._closed = True
        if self._staged_layout is not None:
            self.store._set_layout(self._staged_layout)
        return len(self._staged)

    def discard(self) -> None:
        self._staged.clear()
        self._closed = True

    def __enter__(self) -> "LedgerTxn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.discard()
        elif not self._closed:
            self.commit()


class LedgerStore:
    """Records of one deployment, validated against its active layout."""

    def __init__(self, kv: KV, identity: str) -> None:
        self.kv = kv
        self.identity = identity
        self.locks = KeyedLocks()
        self.barrier = UpgradeBarrier()
        self._alloc_lock = threading.Lock()
        self._layout: Optional[LayoutDescriptor] = None

    def __repr__(self) -> str:
        return f"LedgerStore(identity={self.identity!r})"

    # ---------------- layout & metadata ----------------

    def layout_history(self) -> List[LayoutDescriptor]:
        prefix = META.key(self.identity, b"layout")
        return [LayoutDescriptor.decode(v) for _, v in self.kv.iter_prefix(prefix)]

    def active_layout(self) -> LayoutDescriptor:
        if self._layout is None:
            history = self.layout_history()
            if not history:
                raise NotFound("layout descriptor", identity=self.identity)
            self._layout = history[-1]
        return self._layout

    def refresh_layout(self) -> LayoutDescriptor:
        """Drop the cached descriptor and re-read it from the KV."""
        self._layout = None
        return self.active_layout()

    def _set_layout(self, descriptor: LayoutDescriptor) -> None:
        self._layout = descriptor
        log.info("active layout changed", extra={"identity": self.identity, "layout_version": descriptor.version})

    def implementation(self) -> Optional[str]:
        raw = self.kv.get(META.key(self.identity, b"impl"))
        return raw.decode("utf-8") if raw is not None else None

    def upgrade_history(self) -> List[Dict[str, Any]]:
        prefix = META.key(self.identity, b"upgrade")
        return [cbor2.loads(v) for _, v in self.kv.iter_prefix(prefix)]

    def allocate_auction_id(self) -> int:
        """Reserve the next auction id. Ids are never reused; an aborted create leaves a gap."""
        key = META.key(self.identity, b"nextAuctionId")
        with self._alloc_lock:
            raw = self.kv.get(key)
            auction_id = from_be(raw) if raw else 1
            with self.kv.batch() as b:
                b.put(key, be_u64(auction_id + 1))
        return auction_id

    def txn(self, layout: Optional[LayoutDescriptor] = None) -> LedgerTxn:
        return LedgerTxn(self, layout or self.active_layout())

    def blank_extras(self, kind: str) -> Dict[str, Any]:
        return self.txn().blank_extras(kind)

    # ---------------- single-operation contract ----------------

    def get(self, auction_id: int) -> AuctionRecord:
        return self.txn().get_auction(auction_id)

    def put(self, auction_id: int, record: AuctionRecord) -> None:
        if record.auction_id != auction_id:
            raise LayoutMismatch("record auction_id does not match its key", kind="auction", auction_id=auction_id)
        with self.txn() as t:
            t.put_auction(record)

    def append_bid(self, bid: BidRecord) -> int:
        with self.txn() as t:
            return t.append_bid(bid)

    def credit_escrow(self, auction_id: int, bidder: str, amount: int) -> EscrowRecord:
        with self.txn() as t:
            return t.credit_escrow(auction_id, bidder, amount)

    def debit_escrow(self, auction_id: int, bidder: str, amount: int) -> EscrowRecord:
        with self.txn() as t:
            return t.debit_escrow(auction_id, bidder, amount)

    def get_escrow(self, auction_id: int, account: str) -> EscrowRecord:
        return self.txn().get_escrow(auction_id, account)

    def get_proceeds(self, auction_id: int) -> Optional[ProceedsRecord]:
        return self.txn().get_proceeds(auction_id)

    def credit_proceeds(self, auction_id: int, seller: str, amount: int) -> ProceedsRecord:
        with self.txn() as t:
            return t.credit_proceeds(auction_id, seller, amount)

    def debit_proceeds(self, auction_id: int, seller: str, amount: int) -> ProceedsRecord:
        with self.txn() as t:
            return t.debit_proceeds(auction_id, seller, amount)

    def bids(self, auction_id: int) -> List[BidRecord]:
        return self.txn().bids(auction_id)

    # ---------------- scans (upgrade validation / inspection only) ----------------

    def scan_raw(self, kind: str) -> Iterator[Tuple[bytes, bytes]]:
        return self.kv.iter_prefix(LEDGER.key(self.identity, _tag(kind)))

    def scan_fields(self, kind: str, layout: Optional[LayoutDescriptor] = None) -> Iterator[Tuple[bytes, Dict[str, Any]]]:
        desc = layout or self.active_layout()
        for k, v in self.scan_raw(kind):
            yield k, decode_record(kind, v, desc)

    def scan_auctions(self) -> Iterator[AuctionRecord]:
        for _, values in self.scan_fields("auction"):
            yield AuctionRecord.from_fields(values)

    def scan_bids(self) -> Iterator[BidRecord]:
        for _, values in self.scan_fields("bid"):
            yield BidRecord.from_fields(values)

    def scan_escrow(self) -> Iterator[EscrowRecord]:
        for _, values in self.scan_fields("escrow"):
            yield EscrowRecord.from_fields(values)

    def scan_proceeds(self) -> Iterator[ProceedsRecord]:
        for _, values in self.scan_fields("proceeds"):
            yield ProceedsRecord.from_fields(values)


__all__ = ["LedgerStore", "LedgerTxn", "KIND_TAGS"]
