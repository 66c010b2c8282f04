from __future__ import annotations

"""
auction_ledger.layout
---------------------

Versioned storage layout descriptors.

A descriptor lists, per record kind, the ordered `(name, semantic type, slot)`
tuples that give persisted bytes their meaning. Records are stored as canonical
CBOR arrays in slot order; an array written under an older descriptor is
shorter and decodes under a newer one with the appended slots filled from
their declared defaults.

Compatibility rule (`is_compatible_extension`): a newer descriptor may append
fields and add record kinds, never drop, move, rename or retype a slot.

Descriptors are pure values. They are consulted by the store on every
read/write and by the upgrade coordinator as a gate; they never change once
persisted.
"""

import hashlib
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import cbor2

from .errors import LayoutMismatch

# ---------------------------------------------------------------------------
# Semantic types
# ---------------------------------------------------------------------------

U64 = "u64"
U256 = "u256"
ADDRESS = "address"
TOKEN = "token"
ASSET_REF = "asset_ref"
PHASE = "phase"
OPT_U256 = "optional<u256>"
OPT_ADDRESS = "optional<address>"

_PHASES = frozenset({0, 1, 2, 3})


def _is_uint(v: Any, bits: int) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and 0 <= v < (1 << bits)


def _is_text(v: Any) -> bool:
    return isinstance(v, str) and len(v) > 0


def _is_asset_ref(v: Any) -> bool:
    return isinstance(v, (list, tuple)) and len(v) == 2 and _is_text(v[0]) and _is_uint(v[1], 64)


_CHECKS: Dict[str, Callable[[Any], bool]] = {
    U64: lambda v: _is_uint(v, 64),
    U256: lambda v: _is_uint(v, 256),
    ADDRESS: _is_text,
    TOKEN: _is_text,
    ASSET_REF: _is_asset_ref,
    PHASE: lambda v: isinstance(v, int) and not isinstance(v, bool) and v in _PHASES,
    OPT_U256: lambda v: v is None or _is_uint(v, 256),
    OPT_ADDRESS: lambda v: v is None or _is_text(v),
}

SEMANTIC_TYPES = frozenset(_CHECKS)


def conforms(semantic_type: str, value: Any) -> bool:
    return _CHECKS[semantic_type](value)


# ---------------------------------------------------------------------------
# Descriptor values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSlot:
    name: str
    semantic_type: str
    slot: int
    default: Any = None

    def __post_init__(self) -> None:
        if self.semantic_type not in SEMANTIC_TYPES:
            raise ValueError(f"unknown semantic type {self.semantic_type!r} for field {self.name!r}")
        if self.slot < 0:
            raise ValueError("slot index must be non-negative")

    def same_meaning(self, other: "FieldSlot") -> bool:
        return (self.name, self.slot, self.semantic_type) == (other.name, other.slot, other.semantic_type)


@dataclass(frozen=True)
class RecordLayout:
    kind: str
    fields: Tuple[FieldSlot, ...]

    def __post_init__(self) -> None:
        slots = [f.slot for f in self.fields]
        if slots != list(range(len(slots))):
            raise ValueError(f"{self.kind}: slots must be contiguous from 0 in declaration order")
        names = [f.name for f in self.fields]
        if len(set(names)) != len(names):
            raise ValueError(f"{self.kind}: duplicate field names")

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def field(self, name: str) -> Optional[FieldSlot]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


@dataclass(frozen=True)
class LayoutDescriptor:
    version: int
    records: Tuple[RecordLayout, ...]

    @property
    def kinds(self) -> Tuple[str, ...]:
        return tuple(r.kind for r in self.records)

    def record(self, kind: str) -> RecordLayout:
        for r in self.records:
            if r.kind == kind:
                return r
        raise LayoutMismatch(f"record kind {kind!r} not declared by layout v{self.version}", kind=kind)

    def extended(self, version: int, appended: Mapping[str, Sequence[Tuple[str, str, Any]]]) -> "LayoutDescriptor":
        """
        Return a new descriptor with `appended[kind]` = [(name, type, default), ...]
        added after the existing slots (new kinds start at slot 0).
        """
        records = list(self.records)
        for kind, extra in appended.items():
            idx = next((i for i, r in enumerate(records) if r.kind == kind), None)
            existing: Tuple[FieldSlot, ...] = records[idx].fields if idx is not None else ()
            fields = existing + tuple(
                FieldSlot(name, st, len(existing) + i, default) for i, (name, st, default) in enumerate(extra)
            )
            if idx is None:
                records.append(RecordLayout(kind, fields))
            else:
                records[idx] = replace(records[idx], fields=fields)
        return LayoutDescriptor(version, tuple(records))

    # --- serialization ---

    def to_obj(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "records": [
                {"kind": r.kind, "fields": [[f.name, f.semantic_type, f.slot, f.default] for f in r.fields]}
                for r in self.records
            ],
        }

    @classmethod
    def from_obj(cls, obj: Mapping[str, Any]) -> "LayoutDescriptor":
        return cls(
            version=int(obj["version"]),
            records=tuple(
                RecordLayout(r["kind"], tuple(FieldSlot(n, t, int(s), d) for n, t, s, d in r["fields"]))
                for r in obj["records"]
            ),
        )

    def encode(self) -> bytes:
        return cbor2.dumps(self.to_obj(), canonical=True)

    @classmethod
    def decode(cls, data: bytes) -> "LayoutDescriptor":
        return cls.from_obj(cbor2.loads(data))

    def digest(self) -> str:
        return hashlib.sha3_256(self.encode()).hexdigest()


# ---------------------------------------------------------------------------
# Compatibility & validation
# ---------------------------------------------------------------------------


def is_compatible_extension(old: LayoutDescriptor, new: LayoutDescriptor) -> bool:
    """True iff `new` preserves the meaning of every slot declared by `old`."""
    if new.version < old.version:
        return False
    if new.version == old.version:
        return new == old
    new_by_kind = {r.kind: r for r in new.records}
    for rec in old.records:
        target = new_by_kind.get(rec.kind)
        if target is None or len(target.fields) < len(rec.fields):
            return False
        for f in rec.fields:
            if not f.same_meaning(target.fields[f.slot]):
                return False
    return True


def incompatibilities(old: LayoutDescriptor, new: LayoutDescriptor) -> list:
    """Human-readable reasons `new` is not a compatible extension of `old`."""
    out = []
    if new.version <= old.version and new != old:
        out.append(f"version must increase (v{old.version} -> v{new.version})")
    new_by_kind = {r.kind: r for r in new.records}
    for rec in old.records:
        target = new_by_kind.get(rec.kind)
        if target is None:
            out.append(f"record kind {rec.kind!r} dropped")
            continue
        for f in rec.fields:
            tf = target.fields[f.slot] if f.slot < len(target.fields) else None
            if tf is None:
                out.append(f"{rec.kind}.{f.name} (slot {f.slot}) dropped")
            elif not f.same_meaning(tf):
                out.append(f"{rec.kind} slot {f.slot} changed {f.name}:{f.semantic_type} -> {tf.name}:{tf.semantic_type}")
    return out


def validate(kind: str, values: Mapping[str, Any], layout: LayoutDescriptor) -> None:
    """Raise LayoutMismatch unless `values` has exactly the declared fields, each conforming."""
    rec = layout.record(kind)
    declared = set(rec.names)
    given = set(values)
    if declared != given:
        raise LayoutMismatch(
            f"{kind} field set does not match layout v{layout.version}",
            kind=kind,
            missing=sorted(declared - given) or None,
            unexpected=sorted(given - declared) or None,
        )
    for f in rec.fields:
        if not conforms(f.semantic_type, values[f.name]):
            raise LayoutMismatch(
                f"{kind}.{f.name} does not conform to {f.semantic_type}",
                kind=kind,
                field=f.name,
                value=repr(values[f.name]),
            )


def defaults(kind: str, layout: LayoutDescriptor, *, after: int = 0) -> Dict[str, Any]:
    """Declared defaults of the fields of `kind` at slot >= `after`."""
    return {f.name: f.default for f in layout.record(kind).fields if f.slot >= after}


def encode_record(kind: str, values: Mapping[str, Any], layout: LayoutDescriptor) -> bytes:
    validate(kind, values, layout)
    rec = layout.record(kind)
    return cbor2.dumps([values[f.name] for f in rec.fields], canonical=True)


def decode_record(kind: str, data: bytes, layout: LayoutDescriptor) -> Dict[str, Any]:
    rec = layout.record(kind)
    try:
        arr = cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError) as e:
        raise LayoutMismatch(f"{kind} record is not valid CBOR", kind=kind, error=str(e)) from e
    if not isinstance(arr, list):
        raise LayoutMismatch(f"{kind} record is not a slot array", kind=kind)
    if len(arr) > len(rec.fields):
        raise LayoutMismatch(
            f"{kind} record has {len(arr)} slots, layout v{layout.version} declares {len(rec.fields)}",
            kind=kind,
        )
    values = {f.name: (arr[f.slot] if f.slot < len(arr) else f.default) for f in rec.fields}
    validate(kind, values, layout)
    return values


# ---------------------------------------------------------------------------
# Genesis
# ---------------------------------------------------------------------------


def _record(kind: str, columns: Iterable[Tuple[str, str]]) -> RecordLayout:
    return RecordLayout(kind, tuple(FieldSlot(n, t, i) for i, (n, t) in enumerate(columns)))


GENESIS_LAYOUT = LayoutDescriptor(
    version=1,
    records=(
        _record(
            "auction",
            [
                ("auction_id", U64),
                ("seller", ADDRESS),
                ("asset_ref", ASSET_REF),
                ("reserve_price", U256),
                ("start_time", U64),
                ("duration", U64),
                ("payment_token", TOKEN),
                ("phase", PHASE),
                ("highest_bid", OPT_U256),
                ("highest_bidder", OPT_ADDRESS),
                ("escrowed_amount", U256),
            ],
        ),
        _record("bid", [("auction_id", U64), ("bidder", ADDRESS), ("amount", U256), ("timestamp", U64)]),
        _record("escrow", [("auction_id", U64), ("account", ADDRESS), ("balance", U256), ("withdrawn", U256)]),
        _record("proceeds", [("auction_id", U64), ("seller", ADDRESS), ("pending", U256), ("withdrawn", U256)]),
    ),
)


__all__ = [
    "FieldSlot",
    "RecordLayout",
    "LayoutDescriptor",
    "SEMANTIC_TYPES",
    "conforms",
    "is_compatible_extension",
    "incompatibilities",
    "validate",
    "defaults",
    "encode_record",
    "decode_record",
    "GENESIS_LAYOUT",
]
