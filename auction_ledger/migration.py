from __future__ import annotations

"""
auction_ledger.migration
------------------------

Versioned layout migrations.

A `LayoutMigration` names the target descriptor and an optional backfill that
computes values for appended fields from existing state. `stage_migration`
checks compatibility, re-validates EVERY persisted record under the target
descriptor (full scan) and stages the backfilled records in a transaction
bound to the target descriptor. Nothing is written until the caller commits
that transaction, so a failure at any point leaves live state untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import IncompatibleLayout, LayoutMismatch
from .layout import LayoutDescriptor, incompatibilities, is_compatible_extension
from .store import LedgerStore, LedgerTxn

log = logging.getLogger(__name__)

# backfill(txn, kind, values) -> values; txn reads under the target descriptor
Backfill = Callable[[LedgerTxn, str, Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class LayoutMigration:
    descriptor: LayoutDescriptor
    backfill: Optional[Backfill] = None
    description: str = ""


@dataclass
class MigrationReport:
    from_version: int
    to_version: int
    scanned: Dict[str, int] = field(default_factory=dict)
    rewritten: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "scanned": dict(self.scanned),
            "rewritten": self.rewritten,
        }


def check_compatible(current: LayoutDescriptor, proposed: LayoutDescriptor) -> None:
    if not is_compatible_extension(current, proposed):
        raise IncompatibleLayout(
            "proposed layout is not a compatible extension of the active layout",
            current_version=current.version,
            proposed_version=proposed.version,
            reasons=incompatibilities(current, proposed),
        )


def stage_migration(store: LedgerStore, migration: LayoutMigration) -> Tuple[LedgerTxn, MigrationReport]:
    """Return a staged (uncommitted) transaction applying `migration` to `store`."""
    current = store.active_layout()
    target = migration.descriptor
    check_compatible(current, target)

    txn = store.txn(layout=target)
    report = MigrationReport(from_version=current.version, to_version=target.version)
    for kind in current.kinds:
        count = 0
        try:
            for key, values in store.scan_fields(kind, target):
                count += 1
                if migration.backfill is None:
                    continue
                updated = migration.backfill(txn, kind, dict(values))
                if updated != values:
                    txn.rewrite(kind, key, updated)
                    report.rewritten += 1
        except LayoutMismatch as e:
            txn.discard()
            raise IncompatibleLayout(
                "existing record does not conform to the proposed layout",
                current_version=current.version,
                proposed_version=target.version,
                kind=kind,
                error=e.message,
            ) from e
        report.scanned[kind] = count

    if target.version != current.version:
        txn.stage_layout(target)
    log.info("migration staged", extra={"identity": store.identity, **report.to_dict()})
    return txn, report


__all__ = ["LayoutMigration", "MigrationReport", "Backfill", "check_compatible", "stage_migration"]
