from __future__ import annotations

"""
KV interface & namespace prefixes
=================================

Backend-agnostic Key–Value interface used by the auction ledger, plus the
canonical key prefixes of its logical buckets:

- LEDGER (b"l:") : auction, bid, escrow and proceeds records per deployment
- META   (b"m:") : per-deployment metadata (id counters, layout history,
                   implementation pointer, upgrade history)
- DEPLOY (b"d:") : deployment registry (stable identity → deployment info)

Every LEDGER/META key starts with the deployment's stable identity, so several
deployments can share one database without seeing each other's records.

Key building helpers
--------------------
- Prefix(ns=b"l") produces a prefix object:
    LEDGER.key(identity, b"auc", be_u64(auction_id)) → b"l:" + len|data + ...
- Integers use big-endian fixed-width encodings (be_u32, be_u64) so that
  prefix scans come back in numeric order.

Example
-------
>>> from auction_ledger.db.kv import LEDGER, be_u64
>>> k = LEDGER.key("0xabc", b"auc", be_u64(1))
>>> k.startswith(LEDGER.raw)
True

Batching
--------
`KV.batch()` returns a context manager. Use it to atomically put/delete:

>>> with kv.batch() as b:
...     b.put(LEDGER.key(b"a"), b"1")
...     b.delete(LEDGER.key(b"b"))
"""

from typing import Iterator, Optional, Protocol, Tuple, Union, runtime_checkable

# ---------------------------------------------------------------------------
# Prefix helpers
# ---------------------------------------------------------------------------

NS_SEP = b":"  # namespace separator used only once after the leading ns byte

KeyPart = Union[bytes, bytearray, memoryview, str, int]


class Prefix:
    """
    Logical namespace prefix (e.g., b"l:" for LEDGER).

    .raw gives the raw bytes prefix.
    .key(*parts) builds a composite key: prefix + ∑ (uvarlen | part_bytes).
    """

    __slots__ = ("_raw",)

    def __init__(self, ns: Union[bytes, bytearray, memoryview, str]) -> None:
        if isinstance(ns, str):
            ns_b = ns.encode("ascii")
        else:
            ns_b = bytes(ns)
        if len(ns_b) == 0:
            raise ValueError("namespace must be non-empty")
        self._raw = ns_b.rstrip(NS_SEP) + NS_SEP

    @property
    def raw(self) -> bytes:
        return self._raw

    def key(self, *parts: KeyPart) -> bytes:
        """Build a composite key under this prefix."""
        out = bytearray(self._raw)
        for p in parts:
            pb = _part_to_bytes(p)
            out.extend(_uvarint_len(len(pb)))
            out.extend(pb)
        return bytes(out)


def _part_to_bytes(p: KeyPart) -> bytes:
    if isinstance(p, (bytes, bytearray, memoryview)):
        return bytes(p)
    if isinstance(p, str):
        return p.encode("utf-8")
    if isinstance(p, int):
        if p < 0:
            raise ValueError("negative ints not supported in key parts")
        return _int_big_endian_minimal(p)
    raise TypeError(f"unsupported key part type: {type(p)!r}")


def _int_big_endian_minimal(n: int) -> bytes:
    if n == 0:
        return b"\x00"
    return n.to_bytes((n.bit_length() + 7) // 8, "big")


def _uvarint_len(n: int) -> bytes:
    """LEB128-like unsigned length prefix."""
    if n < 0:
        raise ValueError("length must be non-negative")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(0x80 | b)
        else:
            out.append(b)
            break
    return bytes(out)


def be_u32(n: int) -> bytes:
    if not (0 <= n < (1 << 32)):
        raise ValueError("be_u32 out of range")
    return n.to_bytes(4, "big")


def be_u64(n: int) -> bytes:
    if not (0 <= n < (1 << 64)):
        raise ValueError("be_u64 out of range")
    return n.to_bytes(8, "big")


def from_be(b: bytes) -> int:
    return int.from_bytes(b, "big")


LEDGER = Prefix(b"l")  # auction / bid / escrow / proceeds records
META = Prefix(b"m")  # counters, layout history, impl pointer, upgrade log
DEPLOY = Prefix(b"d")  # deployment registry


# ---------------------------------------------------------------------------
# KV protocols & Batch
# ---------------------------------------------------------------------------


@runtime_checkable
class ReadOnlyKV(Protocol):
    """Minimal read-only KV surface."""

    def get(self, key: bytes) -> Optional[bytes]:
        """Fetch value or None if missing."""
        ...

    def has(self, key: bytes) -> bool:
        ...

    def iter_prefix(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        """
        Iterate over (key, value) pairs whose key begins with `prefix`,
        in lexicographic byte-order of keys.
        """
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Batch(Protocol):
    """
    A write-batch context manager. Backend guarantees atomicity when exiting
    the context without exception. If an exception escapes, the batch is rolled back.
    """

    def put(self, key: bytes, value: bytes) -> None: ...
    def delete(self, key: bytes) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def __enter__(self) -> "Batch": ...
    def __exit__(self, exc_type, exc, tb) -> Optional[bool]: ...


@runtime_checkable
class KV(ReadOnlyKV, Protocol):
    """Full RW KV surface."""

    def put(self, key: bytes, value: bytes) -> None:
        ...

    def delete(self, key: bytes) -> None:
        ...

    def batch(self) -> Batch:
        ...


# Key shapes
# - LEDGER.key(ident, b"auc", be_u64(id))                 -> auction record CBOR
# - LEDGER.key(ident, b"bid", be_u64(id), be_u32(seq))    -> bid record CBOR
# - LEDGER.key(ident, b"esc", be_u64(id), account)        -> escrow record CBOR
# - LEDGER.key(ident, b"pro", be_u64(id))                 -> proceeds record CBOR
# - META.key(ident, b"nextAuctionId")                     -> be_u64
# - META.key(ident, b"bidSeq", be_u64(id))                -> be_u32
# - META.key(ident, b"layout", be_u32(version))           -> descriptor CBOR
# - META.key(ident, b"impl")                              -> logic version (utf-8)
# - META.key(ident, b"upgrade", be_u32(n))                -> upgrade entry CBOR
# - DEPLOY.key(b"byIdent", ident)                         -> deployment CBOR
# - DEPLOY.key(b"counter")                                -> be_u64


__all__ = [
    "ReadOnlyKV",
    "KV",
    "Batch",
    "LEDGER",
    "META",
    "DEPLOY",
    "Prefix",
    "be_u32",
    "be_u64",
    "from_be",
]
