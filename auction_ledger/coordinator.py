from __future__ import annotations

"""
auction_ledger.coordinator
--------------------------

Stable identities and live logic upgrades.

A deployment is a ledger store (addressed by a stable identity derived like a
proxy address) plus an implementation pointer naming the logic version bound
to it. Callers only ever hold a `ProxyHandle`; each call takes the store's
upgrade barrier shared, resolves whatever logic is bound right now and
dispatches to it.

Upgrade protocol (`UpgradeCoordinator.upgrade`)
-----------------------------------------------
1. the caller must be authorized for the upgrade action (NotAuthorized)
2. drain: take the barrier exclusively within `upgrade.drain_timeout_s`
   (UpgradeBusy), so no ledger operation is in flight
3. with a migration: the new descriptor must be a compatible extension of the
   active one and every persisted record must re-validate under it
   (IncompatibleLayout); backfills are staged
4. the new logic must find every field it uses in the resulting layout
   (IncompatibleLayout)
5. ONE batch appends the descriptor, writes the backfills, moves the
   implementation pointer and appends an upgrade-history entry; only then is
   the in-process binding swapped

Any failure before step 5 commits leaves the old logic bound and no record
touched.
"""

import functools
import hashlib
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import cbor2

from . import logging as llog
from .config import LedgerConfig
from .db.kv import DEPLOY, KV, be_u64, from_be
from .errors import (IncompatibleLayout, LayoutMismatch, LedgerError, NotAuthorized, NotFound, SameImplementation,
                     StructuralError, UpgradeBusy)
from .interfaces import AccessControl, AssetRegistry, Clock, FundTransfer, PriceFeed
from .layout import LayoutDescriptor
from .logic import AuctionLogicV1, LogicRegistry, default_registry
from .metrics import UPGRADE_DRAIN_SECONDS, UPGRADES, timed
from .migration import LayoutMigration, MigrationReport, stage_migration
from .store import LedgerStore

log = logging.getLogger(__name__)

IDENTITY_NAMESPACE = b"auction-ledger/proxy"


def derive_identity(index: int, deployer: str) -> str:
    """Stable identity for the `index`-th deployment made by `deployer`."""
    digest = hashlib.sha3_256(IDENTITY_NAMESPACE + be_u64(index) + deployer.encode("utf-8")).hexdigest()
    return "0x" + digest[:40]


@dataclass(frozen=True)
class Deployment:
    identity: str
    index: int
    deployer: str
    logic_version: str
    layout_version: int
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UpgradeResult:
    identity: str
    from_version: str
    to_version: str
    from_layout: int
    to_layout: int
    seq: int
    migration: Optional[MigrationReport] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["migration"] = self.migration.to_dict() if self.migration is not None else None
        return d


class ProxyHandle:
    """Stable call site for one deployment; survives upgrades."""

    def __init__(self, coordinator: "UpgradeCoordinator", identity: str) -> None:
        self._coordinator = coordinator
        self._identity = identity

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def implementation(self) -> str:
        return self._coordinator.implementation(self._identity)

    def call(self, op: str, *args: Any, **kwargs: Any) -> Any:
        return self._coordinator.dispatch(self._identity, op, *args, **kwargs)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name.startswith("_") or name not in self._coordinator.entrypoints(self._identity):
            raise AttributeError(f"{self!r} has no entrypoint {name!r}")
        return functools.partial(self.call, name)

    def __repr__(self) -> str:
        return f"ProxyHandle({self._identity})"


class UpgradeCoordinator:
    def __init__(
        self,
        kv: KV,
        *,
        assets: AssetRegistry,
        funds: FundTransfer,
        access: AccessControl,
        clock: Clock,
        prices: Optional[PriceFeed] = None,
        registry: Optional[LogicRegistry] = None,
        config: Optional[LedgerConfig] = None,
    ) -> None:
        self.kv = kv
        self.assets = assets
        self.funds = funds
        self.access = access
        self.clock = clock
        self.prices = prices
        self.registry = registry or default_registry()
        self.config = config or LedgerConfig()
        self._lock = threading.RLock()
        self._stores: Dict[str, LedgerStore] = {}
        self._bound: Dict[str, AuctionLogicV1] = {}

    # ------------------------------------------------------------------
    # deployments
    # ------------------------------------------------------------------

    def _instantiate(self, cls: type, store: LedgerStore) -> AuctionLogicV1:
        return cls(
            store,
            assets=self.assets,
            funds=self.funds,
            clock=self.clock,
            prices=self.prices,
            bidding=self.config.bidding,
        )

    def deploy_initial(self, logic_version: Optional[str] = None, *, deployer: str = "deployer") -> str:
        """Create a new deployment bound to `logic_version`; returns its stable identity."""
        cls = self.registry.get(logic_version or self.config.upgrade.default_logic)
        with self._lock:
            raw = self.kv.get(DEPLOY.key(b"counter"))
            index = from_be(raw) if raw else 0
            identity = derive_identity(index, deployer)
            store = LedgerStore(self.kv, identity)
            now = int(self.clock.now())
            dep = Deployment(identity, index, deployer, cls.VERSION, cls.LAYOUT.version, now)

            txn = store.txn(layout=cls.LAYOUT)
            txn.stage_layout(cls.LAYOUT)
            txn.stage_implementation(cls.VERSION)
            txn.stage_upgrade_entry(
                {"kind": "deploy", "to": cls.VERSION, "to_layout": cls.LAYOUT.version, "caller": deployer, "at": now}
            )
            txn.stage_raw(DEPLOY.key(b"byIdent", identity), cbor2.dumps(dep.to_dict(), canonical=True))
            txn.stage_raw(DEPLOY.key(b"counter"), be_u64(index + 1))
            txn.commit()

            self._stores[identity] = store
            self._bound[identity] = self._instantiate(cls, store)

        log.info("deployment created", extra=dep.to_dict())
        return identity

    def deployment(self, identity: str) -> Deployment:
        raw = self.kv.get(DEPLOY.key(b"byIdent", identity))
        if raw is None:
            raise NotFound("deployment", identity=identity)
        return Deployment(**cbor2.loads(raw))

    def deployments(self) -> List[Deployment]:
        return [Deployment(**cbor2.loads(v)) for _, v in self.kv.iter_prefix(DEPLOY.key(b"byIdent"))]

    def attach(self, identity: str) -> ProxyHandle:
        """Bind `identity` from persisted state (after a restart); idempotent."""
        with self._lock:
            if identity not in self._bound:
                self.deployment(identity)
                store = LedgerStore(self.kv, identity)
                version = store.implementation()
                if version is None:
                    raise NotFound("implementation pointer", identity=identity)
                cls = self.registry.get(version)
                missing = cls.missing_fields(store.active_layout())
                if missing:
                    raise LayoutMismatch(
                        "bound logic uses fields the persisted layout does not declare",
                        logic=version,
                        missing=missing,
                    )
                self._stores[identity] = store
                self._bound[identity] = self._instantiate(cls, store)
                log.info("deployment attached", extra={"identity": identity, "logic_version": version})
        return ProxyHandle(self, identity)

    def handle(self, identity: str) -> ProxyHandle:
        return self.attach(identity)

    def store(self, identity: str) -> LedgerStore:
        self.attach(identity)
        return self._stores[identity]

    def implementation(self, identity: str) -> str:
        self.attach(identity)
        return self._bound[identity].VERSION

    def entrypoints(self, identity: str) -> FrozenSet[str]:
        self.attach(identity)
        return self._bound[identity].ENTRYPOINTS

    def history(self, identity: str) -> List[Dict[str, Any]]:
        return self.store(identity).upgrade_history()

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    def dispatch(self, identity: str, op: str, *args: Any, **kwargs: Any) -> Any:
        store = self.store(identity)
        with store.barrier.shared():
            logic = self._bound[identity]
            if op not in logic.ENTRYPOINTS:
                raise AttributeError(f"logic {logic.VERSION} has no entrypoint {op!r}")
            with llog.bound(deployment=identity, logic_version=logic.VERSION), timed(op):
                try:
                    return getattr(logic, op)(*args, **kwargs)
                except StructuralError as e:
                    log.error("structural error in %s", op, extra={"error": e.to_dict()})
                    raise

    # ------------------------------------------------------------------
    # upgrade
    # ------------------------------------------------------------------

    def upgrade(
        self,
        identity: str,
        new_logic_version: str,
        migration: Optional[LayoutMigration] = None,
        *,
        caller: str,
    ) -> UpgradeResult:
        with llog.trace_scope():
            try:
                return self._upgrade(identity, new_logic_version, migration, caller)
            except LedgerError as e:
                UPGRADES.labels(result=e.reason).inc()
                log.warning(
                    "upgrade rejected",
                    extra={"identity": identity, "to": new_logic_version, "caller": caller, "error": e.to_dict()},
                )
                raise
            except Exception:
                UPGRADES.labels(result="failed").inc()
                log.exception("upgrade failed", extra={"identity": identity, "to": new_logic_version})
                raise

    @staticmethod
    def _rederive(old_logic: AuctionLogicV1, new_cls: type, current: LayoutDescriptor) -> Optional[LayoutMigration]:
        """Backfill at the active layout for fields `new_cls` derives but `old_logic` left stale."""
        bundled = new_cls.MIGRATION
        if bundled is None or bundled.backfill is None:
            return None
        if new_cls.missing_fields(current) or not new_cls.missing_fields(old_logic.LAYOUT):
            return None
        return LayoutMigration(
            descriptor=current,
            backfill=bundled.backfill,
            description=f"re-derive {', '.join(new_cls.missing_fields(old_logic.LAYOUT))} after {old_logic.VERSION}",
        )

    def _upgrade(
        self,
        identity: str,
        new_logic_version: str,
        migration: Optional[LayoutMigration],
        caller: str,
    ) -> UpgradeResult:
        action = self.config.upgrade.upgrade_action
        if not self.access.is_authorized(caller, action):
            raise NotAuthorized(identity=caller, action=action)
        store = self.store(identity)
        new_cls = self.registry.get(new_logic_version)

        timeout = self.config.upgrade.drain_timeout_s
        t0 = time.perf_counter()
        if not store.barrier.acquire_exclusive(timeout=timeout):
            raise UpgradeBusy(identity=identity, timeout_s=timeout)
        UPGRADE_DRAIN_SECONDS.observe(time.perf_counter() - t0)
        try:
            old_logic = self._bound[identity]
            if old_logic.VERSION == new_cls.VERSION:
                raise SameImplementation(identity=identity, version=new_cls.VERSION)

            current = store.active_layout()
            if migration is None:
                migration = self._rederive(old_logic, new_cls, current)
            report: Optional[MigrationReport] = None
            if migration is not None:
                txn, report = stage_migration(store, migration)
            else:
                txn = store.txn()

            missing = new_cls.missing_fields(txn.layout)
            if missing:
                txn.discard()
                raise IncompatibleLayout(
                    f"logic {new_cls.VERSION} uses fields the layout does not declare",
                    current_version=current.version,
                    proposed_version=txn.layout.version,
                    missing=missing,
                )

            now = int(self.clock.now())
            txn.stage_implementation(new_cls.VERSION)
            seq = txn.stage_upgrade_entry(
                {
                    "kind": "upgrade",
                    "from": old_logic.VERSION,
                    "to": new_cls.VERSION,
                    "from_layout": current.version,
                    "to_layout": txn.layout.version,
                    "caller": caller,
                    "at": now,
                    "migration": migration.description if migration is not None else None,
                    "rewritten": report.rewritten if report is not None else 0,
                }
            )
            new_logic = self._instantiate(new_cls, store)
            txn.commit()
            self._bound[identity] = new_logic
        finally:
            store.barrier.release_exclusive()

        result = UpgradeResult(
            identity=identity,
            from_version=old_logic.VERSION,
            to_version=new_cls.VERSION,
            from_layout=current.version,
            to_layout=store.active_layout().version,
            seq=seq,
            migration=report,
        )
        UPGRADES.labels(result="ok").inc()
        log.info("logic upgraded", extra=result.to_dict())
        return result


__all__ = ["UpgradeCoordinator", "ProxyHandle", "Deployment", "UpgradeResult", "derive_identity"]
