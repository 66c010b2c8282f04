from __future__ import annotations

"""
auction_ledger.cli.main
-----------------------

Operator CLI over a persisted ledger database.

Collaborators are sandboxed: funds are unlimited, assets are minted to the
seller when an auction is created (and re-minted on settle, since the in-memory
registry does not persist between invocations), and upgrade authority comes
from `upgrade.admins` in the config. Deployments made through the CLI are
remembered in a JSON cache (`storage.deployments_file`) so later commands can
omit `--identity`.

Examples
--------
auction-ledger --db ./ledger.db deploy --logic v1 --deployer admin
auction-ledger --db ./ledger.db create --seller alice --asset nft#1 --reserve 100 --duration 3600
auction-ledger --db ./ledger.db bid 1 --bidder bob --amount 100
auction-ledger --db ./ledger.db --now 1900000000 settle 1
auction-ledger --db ./ledger.db upgrade v2 --caller admin
auction-ledger --db ./ledger.db audit
"""

import functools
import json
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import typer

from .. import logging as llog
from ..adapters import InMemoryAssetRegistry, InMemoryFunds, ManualClock, RoleAccessControl
from ..config import LedgerConfig, load
from ..coordinator import ProxyHandle, UpgradeCoordinator
from ..db import open_kv
from ..errors import LedgerError, NotFound
from ..inspect import Inspector
from ..types import NATIVE_TOKEN, AssetRef

app = typer.Typer(
    name="auction-ledger",
    add_completion=False,
    no_args_is_help=True,
    help="Upgradeable auction ledger: deploy, bid, settle, upgrade and audit.",
)

# -------------------- runtime --------------------


class Runtime:
    def __init__(self, cfg: LedgerConfig, now: Optional[int] = None) -> None:
        self.cfg = cfg
        # one invocation observes one instant
        self.clock = ManualClock(now if now is not None else int(time.time()))
        self.assets = InMemoryAssetRegistry()
        self.funds = InMemoryFunds(unlimited=True)
        self._kv = None
        self._coordinator: Optional[UpgradeCoordinator] = None

    @property
    def kv(self):
        if self._kv is None:
            self._kv = open_kv(self.cfg.storage.db_uri)
        return self._kv

    @property
    def coordinator(self) -> UpgradeCoordinator:
        if self._coordinator is None:
            self._coordinator = UpgradeCoordinator(
                self.kv,
                assets=self.assets,
                funds=self.funds,
                access=RoleAccessControl(admins=self.cfg.upgrade.admins),
                clock=self.clock,
                config=self.cfg,
            )
        return self._coordinator

    # deployment cache (identity → logic/layout), mirrors what the ledger persisted

    @property
    def cache_path(self) -> Path:
        return Path(self.cfg.storage.deployments_file)

    def read_cache(self) -> Dict[str, Any]:
        if not self.cache_path.exists():
            return {"default": None, "deployments": {}}
        return json.loads(self.cache_path.read_text(encoding="utf-8"))

    def remember(self, identity: str, *, make_default: bool = False) -> None:
        data = self.read_cache()
        dep = self.coordinator.deployment(identity)
        store = self.coordinator.store(identity)
        data["deployments"][identity] = {
            "deployer": dep.deployer,
            "implementation": self.coordinator.implementation(identity),
            "layout_version": store.active_layout().version,
            "updated_at": int(time.time()),
        }
        if make_default or not data.get("default"):
            data["default"] = identity
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        self.cache_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    def resolve(self, identity: Optional[str]) -> str:
        ident = identity or self.read_cache().get("default")
        if not ident:
            raise NotFound("deployment", hint="pass --identity or run `deploy` first")
        return ident

    def handle(self, identity: Optional[str]) -> ProxyHandle:
        return self.coordinator.handle(self.resolve(identity))

    def close(self) -> None:
        if self._kv is not None:
            self._kv.close()


# -------------------- utils --------------------


def _plain(x: Any) -> Any:
    if isinstance(x, Enum):
        return x.value
    if is_dataclass(x) and not isinstance(x, type):
        return _plain(asdict(x))
    if isinstance(x, dict):
        return {str(k): _plain(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_plain(v) for v in x]
    return x


def _emit(obj: Any) -> None:
    typer.echo(json.dumps(_plain(obj), indent=2, sort_keys=True, default=str))


def _ledger_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Report LedgerError as JSON on stderr with exit code 2."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except LedgerError as e:
            typer.echo(json.dumps(e.to_dict(), sort_keys=True, default=str), err=True)
            raise typer.Exit(code=2)

    return wrapper


def _rt(ctx: typer.Context) -> Runtime:
    return ctx.obj


# -------------------- commands --------------------


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON/YAML config file."),
    db: Optional[str] = typer.Option(None, "--db", help="KV URI or sqlite path (overrides config)."),
    cache: Optional[Path] = typer.Option(None, "--cache", help="Deployment cache JSON (overrides config)."),
    now: Optional[int] = typer.Option(None, "--now", help="Pin the clock to this unix timestamp."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override logging.level."),
) -> None:
    cfg = load(
        config,
        overrides={
            "storage.db_uri": db,
            "storage.deployments_file": str(cache) if cache is not None else None,
            "logging.level": log_level,
        },
    )
    llog.configure_from_config(cfg)
    llog.bind(component="cli", trace_id=llog.short_uuid())
    rt = Runtime(cfg, now=now)
    ctx.obj = rt
    ctx.call_on_close(rt.close)


@app.command()
@_ledger_errors
def deploy(
    ctx: typer.Context,
    logic: Optional[str] = typer.Option(None, "--logic", help="Logic version (default: upgrade.default_logic)."),
    deployer: str = typer.Option("admin", "--deployer"),
) -> None:
    """Create a new deployment and print its stable identity."""
    rt = _rt(ctx)
    identity = rt.coordinator.deploy_initial(logic, deployer=deployer)
    rt.remember(identity, make_default=True)
    _emit({"identity": identity, "implementation": rt.coordinator.implementation(identity)})


@app.command()
@_ledger_errors
def create(
    ctx: typer.Context,
    seller: str = typer.Option(..., "--seller"),
    asset: str = typer.Option(..., "--asset", help="registry#index"),
    reserve: int = typer.Option(0, "--reserve", min=0),
    duration: int = typer.Option(..., "--duration", min=1),
    start: Optional[int] = typer.Option(None, "--start", help="Start time (default: now)."),
    token: str = typer.Option(NATIVE_TOKEN, "--token"),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Create an auction (the sandbox registry mints the asset to the seller)."""
    rt = _rt(ctx)
    try:
        ref = AssetRef.parse(asset)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--asset")
    rt.assets.mint(ref, seller)
    h = rt.handle(identity)
    start_time = start if start is not None else int(rt.clock.now())
    auction_id = h.create_auction(seller, ref, reserve, start_time, duration, token)
    _emit({"auction_id": auction_id, "status": h.auction_status(auction_id)})


@app.command()
@_ledger_errors
def bid(
    ctx: typer.Context,
    auction_id: int = typer.Argument(...),
    bidder: str = typer.Option(..., "--bidder"),
    amount: int = typer.Option(..., "--amount"),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Place a bid."""
    rec = _rt(ctx).handle(identity).place_bid(auction_id, bidder, amount)
    _emit({"auction_id": auction_id, "highest_bid": rec.highest_bid, "highest_bidder": rec.highest_bidder})


@app.command()
@_ledger_errors
def settle(
    ctx: typer.Context,
    auction_id: int = typer.Argument(...),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Settle an auction whose bidding window has closed."""
    rt = _rt(ctx)
    h = rt.handle(identity)
    rec = h.get_auction(auction_id)
    if rt.assets.owner_of(rec.asset_ref) is None:
        rt.assets.mint(rec.asset_ref, rec.seller)
    rec = h.settle(auction_id)
    _emit({"auction_id": auction_id, "phase": rec.phase.label, "winner": rec.highest_bidder, "amount": rec.highest_bid})


@app.command()
@_ledger_errors
def cancel(
    ctx: typer.Context,
    auction_id: int = typer.Argument(...),
    caller: str = typer.Option(..., "--caller"),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Cancel an auction that has no bids (seller only)."""
    rec = _rt(ctx).handle(identity).cancel_auction(auction_id, caller)
    _emit({"auction_id": auction_id, "phase": rec.phase.label})


@app.command()
@_ledger_errors
def withdraw(
    ctx: typer.Context,
    auction_id: int = typer.Argument(...),
    account: str = typer.Option(..., "--account"),
    proceeds: bool = typer.Option(False, "--proceeds", help="Withdraw seller proceeds instead of escrow."),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Withdraw an outbid bidder's escrow (or the seller's proceeds)."""
    h = _rt(ctx).handle(identity)
    amount = h.withdraw_proceeds(auction_id, account) if proceeds else h.withdraw_escrow(auction_id, account)
    _emit({"auction_id": auction_id, "account": account, "amount": amount, "kind": "proceeds" if proceeds else "escrow"})


@app.command()
@_ledger_errors
def upgrade(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Logic version to bind."),
    caller: str = typer.Option(..., "--caller"),
    migrate: bool = typer.Option(True, "--migrate/--no-migrate", help="Apply the version's bundled layout migration."),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Rebind a deployment to another logic version."""
    rt = _rt(ctx)
    ident = rt.resolve(identity)
    migration = rt.coordinator.registry.get(version).MIGRATION if migrate else None
    result = rt.coordinator.upgrade(ident, version, migration, caller=caller)
    rt.remember(ident)
    _emit(result.to_dict())


@app.command()
@_ledger_errors
def show(
    ctx: typer.Context,
    auction_id: int = typer.Argument(...),
    identity: Optional[str] = typer.Option(None, "--identity"),
) -> None:
    """Show one auction through the bound logic."""
    h = _rt(ctx).handle(identity)
    rec = h.get_auction(auction_id)
    _emit(
        {
            "implementation": h.implementation,
            "record": rec.to_fields(),
            "status": h.auction_status(auction_id),
            "minimum_bid": h.minimum_bid(auction_id),
            "bids": [b.to_fields() for b in h.bids(auction_id)],
        }
    )


@app.command()
@_ledger_errors
def history(ctx: typer.Context, identity: Optional[str] = typer.Option(None, "--identity")) -> None:
    """Print the deployment's deploy/upgrade history."""
    rt = _rt(ctx)
    _emit(rt.coordinator.history(rt.resolve(identity)))


@app.command()
@_ledger_errors
def inspect(ctx: typer.Context, identity: Optional[str] = typer.Option(None, "--identity")) -> None:
    """Dump persisted state decoded through the stored layout only."""
    rt = _rt(ctx)
    _emit(Inspector(rt.kv, rt.resolve(identity)).snapshot())


@app.command()
@_ledger_errors
def audit(ctx: typer.Context, identity: Optional[str] = typer.Option(None, "--identity")) -> None:
    """Check ledger invariants; exit code 1 when any is violated."""
    rt = _rt(ctx)
    violations = Inspector(rt.kv, rt.resolve(identity)).audit()
    _emit({"ok": not violations, "violations": [v.to_dict() for v in violations]})
    if violations:
        raise typer.Exit(code=1)


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Print the effective configuration."""
    typer.echo(_rt(ctx).cfg.pretty())


if __name__ == "__main__":
    app()
