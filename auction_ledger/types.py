from __future__ import annotations

"""
auction_ledger.types
--------------------

Record types persisted by the ledger store.

Records are plain dataclasses. Fields appended by later layout versions that a
given logic version does not model travel in `extra`, so a record read and
re-written by older logic never loses them.

Conversion to the flat field mapping used by `auction_ledger.layout`:

    rec.to_fields()           -> {"auction_id": 1, "asset_ref": ["reg", 7], ...}
    AuctionRecord.from_fields(fields)
"""

import dataclasses
from decimal import Decimal
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

NATIVE_TOKEN = "native"


class Phase(IntEnum):
    """Stored lifecycle phase of an auction."""

    CREATED = 0
    ACTIVE = 1
    SETTLED = 2
    CANCELLED = 3

    @property
    def is_final(self) -> bool:
        return self in (Phase.SETTLED, Phase.CANCELLED)

    @property
    def label(self) -> str:
        return self.name.lower()


class AuctionStatus(str, Enum):
    """Observed status; EXPIRED is derived from the clock and never stored."""

    CREATED = "created"
    ACTIVE = "active"
    EXPIRED = "expired"
    SETTLED = "settled"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AssetRef:
    """Handle of an item in an external asset registry."""

    registry: str
    index: int

    def to_value(self) -> list:
        return [self.registry, self.index]

    @classmethod
    def from_value(cls, v: Union["AssetRef", Sequence[Any]]) -> "AssetRef":
        if isinstance(v, AssetRef):
            return v
        registry, index = v
        return cls(str(registry), int(index))

    @classmethod
    def parse(cls, s: str) -> "AssetRef":
        """Parse the `registry#index` text form."""
        registry, sep, index = s.rpartition("#")
        if not sep or not registry:
            raise ValueError(f"asset reference must look like 'registry#index': {s!r}")
        return cls(registry, int(index))

    def __str__(self) -> str:
        return f"{self.registry}#{self.index}"


R = TypeVar("R", bound="_Record")


@dataclass
class _Record:
    KIND: ClassVar[str] = ""

    extra: Dict[str, Any] = field(default_factory=dict, kw_only=True)

    def _base_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(self) if f.name != "extra")

    def to_fields(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name in self._base_names():
            out[name] = _plain(getattr(self, name))
        out.update(self.extra)
        return out

    @classmethod
    def from_fields(cls: Type[R], fields: Mapping[str, Any]) -> R:
        names = {f.name for f in dataclasses.fields(cls) if f.name != "extra"}
        base = {k: v for k, v in fields.items() if k in names}
        extra = {k: v for k, v in fields.items() if k not in names}
        return cls(**cls._coerce(base), extra=extra)

    @classmethod
    def _coerce(cls, base: Dict[str, Any]) -> Dict[str, Any]:
        return base


def _plain(v: Any) -> Any:
    if isinstance(v, AssetRef):
        return v.to_value()
    if isinstance(v, IntEnum):
        return int(v)
    return v


@dataclass
class AuctionRecord(_Record):
    KIND: ClassVar[str] = "auction"

    auction_id: int
    seller: str
    asset_ref: AssetRef
    reserve_price: int
    start_time: int
    duration: int
    payment_token: str
    phase: Phase
    highest_bid: Optional[int] = None
    highest_bidder: Optional[str] = None
    escrowed_amount: int = 0

    @property
    def end_time(self) -> int:
        return self.start_time + self.duration

    @classmethod
    def _coerce(cls, base: Dict[str, Any]) -> Dict[str, Any]:
        base = dict(base)
        base["asset_ref"] = AssetRef.from_value(base["asset_ref"])
        base["phase"] = Phase(base["phase"])
        return base

    def status(self, now: int) -> AuctionStatus:
        if self.phase is Phase.SETTLED:
            return AuctionStatus.SETTLED
        if self.phase is Phase.CANCELLED:
            return AuctionStatus.CANCELLED
        if now < self.start_time:
            return AuctionStatus.CREATED
        if now >= self.end_time:
            return AuctionStatus.EXPIRED
        return AuctionStatus.ACTIVE


@dataclass
class BidRecord(_Record):
    KIND: ClassVar[str] = "bid"

    auction_id: int
    bidder: str
    amount: int
    timestamp: int


@dataclass
class EscrowRecord(_Record):
    """Per-(auction, account) refundable balance; never deleted."""

    KIND: ClassVar[str] = "escrow"

    auction_id: int
    account: str
    balance: int = 0
    withdrawn: int = 0


@dataclass
class ProceedsRecord(_Record):
    """Seller settlement pending withdrawal."""

    KIND: ClassVar[str] = "proceeds"

    auction_id: int
    seller: str
    pending: int = 0
    withdrawn: int = 0


@dataclass(frozen=True)
class Quote:
    """Reference-currency valuation of an auction's current price."""

    auction_id: int
    token: str
    basis: str  # "highest_bid" | "reserve"
    amount: int
    unit_price: Decimal
    value: Decimal


RECORD_TYPES: Dict[str, Type[_Record]] = {
    AuctionRecord.KIND: AuctionRecord,
    BidRecord.KIND: BidRecord,
    EscrowRecord.KIND: EscrowRecord,
    ProceedsRecord.KIND: ProceedsRecord,
}


__all__ = [
    "NATIVE_TOKEN",
    "Phase",
    "AuctionStatus",
    "AssetRef",
    "AuctionRecord",
    "BidRecord",
    "EscrowRecord",
    "ProceedsRecord",
    "Quote",
    "RECORD_TYPES",
]
