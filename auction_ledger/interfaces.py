from __future__ import annotations

"""
auction_ledger.interfaces
-------------------------

Capabilities the ledger consumes from the outside world. The concrete
transport is out of scope; anything that duck-types these Protocols can be
plugged into the coordinator (see `auction_ledger.adapters` for in-memory
versions).

Failure contract
----------------
- AssetRegistry.transfer    raises NotAssetOwner or AssetNotTransferable
- FundTransfer.deposit      raises InsufficientFunds
- FundTransfer.release      raises TransferRejected
Each call is made at most once per ledger operation; a raised error aborts the
operation with no ledger change.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from .types import AssetRef


class Action(str, Enum):
    """Privileged actions checked through AccessControl."""

    UPGRADE = "upgrade"


@runtime_checkable
class AssetRegistry(Protocol):
    def owner_of(self, asset: AssetRef) -> Optional[str]:
        """Current controller of `asset`, or None if the registry does not know it."""
        ...

    def transfer(self, asset: AssetRef, sender: str, recipient: str) -> None: ...


@runtime_checkable
class FundTransfer(Protocol):
    def deposit(self, token: str, account: str, amount: int) -> None: ...

    def release(self, token: str, account: str, amount: int) -> None: ...


@runtime_checkable
class AccessControl(Protocol):
    def is_authorized(self, identity: str, action: str) -> bool: ...


@runtime_checkable
class Clock(Protocol):
    def now(self) -> int:
        """Monotonic timestamp in seconds."""
        ...


@runtime_checkable
class PriceFeed(Protocol):
    def latest_price(self, token: str) -> Decimal:
        """Reference-currency value of one smallest unit of `token`."""
        ...


__all__ = ["Action", "AssetRegistry", "FundTransfer", "AccessControl", "Clock", "PriceFeed"]
