from __future__ import annotations

from typing import Any, Dict

import pytest

from auction_ledger.adapters import InMemoryAssetRegistry, InMemoryFunds, ManualClock, RoleAccessControl
from auction_ledger.config import LedgerConfig
from auction_ledger.coordinator import ProxyHandle, UpgradeCoordinator
from auction_ledger.db import open_kv
from auction_ledger.types import AssetRef

T0 = 1_000
ACCOUNTS = ("alice", "bob", "carol", "dave")


@pytest.fixture
def kv():
    db = open_kv("memory://")
    yield db
    db.close()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def assets() -> InMemoryAssetRegistry:
    return InMemoryAssetRegistry()


@pytest.fixture
def funds() -> InMemoryFunds:
    f = InMemoryFunds()
    for acct in ACCOUNTS:
        f.fund(acct, 1_000_000)
    return f


@pytest.fixture
def access() -> RoleAccessControl:
    return RoleAccessControl(admins=["admin"])


@pytest.fixture
def config() -> LedgerConfig:
    cfg = LedgerConfig()
    cfg.upgrade.drain_timeout_s = 0.5
    return cfg


@pytest.fixture
def coordinator(kv, assets, funds, access, clock, config) -> UpgradeCoordinator:
    return UpgradeCoordinator(kv, assets=assets, funds=funds, access=access, clock=clock, config=config)


@pytest.fixture
def handle(coordinator) -> ProxyHandle:
    return coordinator.handle(coordinator.deploy_initial("v1", deployer="admin"))


def mk_auction(h: ProxyHandle, assets: InMemoryAssetRegistry, *, index: int = 1, seller: str = "seller",
               reserve: int = 100, start: int = T0, duration: int = 3_600, **kw: Any) -> int:
    """Mint `nft#index` to the seller and open an auction for it."""
    ref = AssetRef("nft", index)
    assets.mint(ref, seller)
    return h.create_auction(seller, ref, reserve, start, duration, **kw)


def balances(h: ProxyHandle, auction_id: int, *accounts: str) -> Dict[str, int]:
    return {a: h.escrow_balance(auction_id, a) for a in accounts}
