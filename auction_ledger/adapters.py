from __future__ import annotations

"""
auction_ledger.adapters
-----------------------

In-memory implementations of the collaborator Protocols. Used by the tests,
the CLI sandbox and anyone embedding the ledger without real rails.

All adapters are thread-safe and record what they did so tests can assert on
side effects (e.g. `InMemoryAssetRegistry.transfers`).
"""

import threading
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .errors import AssetNotTransferable, InsufficientFunds, NotAssetOwner, NotFound, TransferRejected
from .types import NATIVE_TOKEN, AssetRef


class InMemoryAssetRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: Dict[AssetRef, str] = {}
        self._locked: Set[AssetRef] = set()
        self.transfers: List[Tuple[AssetRef, str, str]] = []

    def mint(self, asset: AssetRef, owner: str) -> None:
        with self._lock:
            self._owners[asset] = owner

    def lock(self, asset: AssetRef) -> None:
        """Make `asset` refuse transfers (AssetNotTransferable)."""
        with self._lock:
            self._locked.add(asset)

    def unlock(self, asset: AssetRef) -> None:
        with self._lock:
            self._locked.discard(asset)

    def owner_of(self, asset: AssetRef) -> Optional[str]:
        with self._lock:
            return self._owners.get(asset)

    def transfer(self, asset: AssetRef, sender: str, recipient: str) -> None:
        with self._lock:
            owner = self._owners.get(asset)
            if owner != sender:
                raise NotAssetOwner(account=sender, asset=str(asset), owner=owner)
            if asset in self._locked:
                raise AssetNotTransferable(asset=str(asset))
            self._owners[asset] = recipient
            self.transfers.append((asset, sender, recipient))


class InMemoryFunds:
    """
    Balances per (token, account) plus the custody pool deposits move into.

    With `unlimited=True` deposits never fail and releases are not checked
    against custody; the CLI sandbox uses this since its balances do not
    persist between invocations.
    """

    def __init__(self, *, unlimited: bool = False) -> None:
        self._lock = threading.Lock()
        self.unlimited = unlimited
        self._balances: Dict[Tuple[str, str], int] = {}
        self._custody: Dict[str, int] = {}
        self._rejecting: Set[str] = set()
        self.deposits: List[Tuple[str, str, int]] = []
        self.releases: List[Tuple[str, str, int]] = []

    def fund(self, account: str, amount: int, token: str = NATIVE_TOKEN) -> None:
        with self._lock:
            self._balances[(token, account)] = self._balances.get((token, account), 0) + amount

    def balance_of(self, account: str, token: str = NATIVE_TOKEN) -> int:
        with self._lock:
            return self._balances.get((token, account), 0)

    def custody(self, token: str = NATIVE_TOKEN) -> int:
        with self._lock:
            return self._custody.get(token, 0)

    def reject(self, account: str) -> None:
        """Make releases to `account` fail with TransferRejected."""
        with self._lock:
            self._rejecting.add(account)

    def accept(self, account: str) -> None:
        with self._lock:
            self._rejecting.discard(account)

    def deposit(self, token: str, account: str, amount: int) -> None:
        with self._lock:
            available = self._balances.get((token, account), 0)
            if not self.unlimited:
                if available < amount:
                    raise InsufficientFunds(account=account, token=token, required=amount, available=available)
                self._balances[(token, account)] = available - amount
            self._custody[token] = self._custody.get(token, 0) + amount
            self.deposits.append((token, account, amount))

    def release(self, token: str, account: str, amount: int) -> None:
        with self._lock:
            if account in self._rejecting:
                raise TransferRejected(account=account, token=token, amount=amount, reason="recipient rejects")
            held = self._custody.get(token, 0)
            if not self.unlimited and held < amount:
                raise TransferRejected(account=account, token=token, amount=amount, reason="custody short")
            self._custody[token] = held - amount
            self._balances[(token, account)] = self._balances.get((token, account), 0) + amount
            self.releases.append((token, account, amount))


def _action_key(action: Any) -> str:
    return action.value if isinstance(action, Enum) else str(action)


class RoleAccessControl:
    """
    Minimal role-based access control: action → set of identities.

    Identities in `admins` are authorized for every action.
    Granting an existing grant or revoking a missing one is a no-op.
    """

    def __init__(self, admins: Iterable[str] = (), grants: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._lock = threading.Lock()
        self._admins: Set[str] = set(admins)
        self._grants: Dict[str, Set[str]] = {k: set(v) for k, v in (grants or {}).items()}

    def grant(self, action: str, identity: str) -> None:
        with self._lock:
            self._grants.setdefault(_action_key(action), set()).add(identity)

    def revoke(self, action: str, identity: str) -> None:
        with self._lock:
            self._grants.get(_action_key(action), set()).discard(identity)

    def is_authorized(self, identity: str, action: str) -> bool:
        if not identity:
            return False
        key = _action_key(action)
        with self._lock:
            return identity in self._admins or identity in self._grants.get(key, set())


class ManualClock:
    def __init__(self, start: int = 0) -> None:
        self._lock = threading.Lock()
        self._now = int(start)

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock is monotonic")
        with self._lock:
            self._now += int(seconds)
            return self._now

    def set(self, t: int) -> None:
        with self._lock:
            if t < self._now:
                raise ValueError("clock is monotonic")
            self._now = int(t)


class SystemClock:
    def now(self) -> int:
        return int(time.time())


class StaticPriceFeed:
    def __init__(self, prices: Mapping[str, Union[Decimal, str, int]]) -> None:
        self._prices = {k: Decimal(str(v)) for k, v in prices.items()}

    def latest_price(self, token: str) -> Decimal:
        try:
            return self._prices[token]
        except KeyError:
            raise NotFound("price", token=token) from None


__all__ = [
    "InMemoryAssetRegistry",
    "InMemoryFunds",
    "RoleAccessControl",
    "ManualClock",
    "SystemClock",
    "StaticPriceFeed",
]
