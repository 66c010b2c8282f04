from __future__ import annotations
"""
auction_ledger.errors
---------------------

Typed exceptions for the auction ledger, its logic versions and the upgrade
coordinator. They are designed to be:
- Richly structured (carry machine-parsable context via `.to_dict()`).
- Stable for callers and metrics (string `code`, short `reason`).
- Classified by `category` so callers know whether a retry can help.

Hierarchy:

    LedgerError (base)
    ├── ValidationError      caller error, no state change
    │   ├── BidTooLow
    │   ├── AuctionNotActive
    │   ├── AuctionExpired
    │   ├── TooEarly
    │   ├── AlreadyFinal
    │   ├── NotAssetOwner
    │   ├── InvalidAuctionParams
    │   ├── NotSeller
    │   ├── AuctionHasBids
    │   └── NotAuthorized
    ├── ResourceError        external collaborator declined, safe to retry later
    │   ├── InsufficientEscrow
    │   ├── InsufficientProceeds
    │   ├── InsufficientFunds
    │   ├── TransferRejected
    │   └── AssetNotTransferable
    └── StructuralError      internal consistency violation
        ├── LayoutMismatch
        ├── IncompatibleLayout
        ├── NotFound
        ├── UnknownLogicVersion
        ├── SameImplementation
        └── UpgradeBusy
"""


import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional

__all__ = [
    "ErrorCategory",
    "LedgerError",
    "ValidationError",
    "ResourceError",
    "StructuralError",
    "BidTooLow",
    "AuctionNotActive",
    "AuctionExpired",
    "TooEarly",
    "AlreadyFinal",
    "NotAssetOwner",
    "InvalidAuctionParams",
    "NotSeller",
    "AuctionHasBids",
    "NotAuthorized",
    "InsufficientEscrow",
    "InsufficientProceeds",
    "InsufficientFunds",
    "TransferRejected",
    "AssetNotTransferable",
    "LayoutMismatch",
    "IncompatibleLayout",
    "NotFound",
    "UnknownLogicVersion",
    "SameImplementation",
    "UpgradeBusy",
]


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    RESOURCE = "resource"
    STRUCTURAL = "structural"


class LedgerError(Exception):
    """Base class for ledger domain errors."""

    code: str = "LEDGER/ERROR"
    category: ErrorCategory = ErrorCategory.STRUCTURAL

    def __init__(self, message: str = "", *, details: Optional[Mapping[str, Any]] = None) -> None:
        self.message = message or self.__class__.__name__
        self.details = {k: v for k, v in dict(details or {}).items() if v is not None}
        super().__init__(self.__str__())

    @property
    def reason(self) -> str:
        """Short snake_case reason, stable for metrics labels."""
        return self.code.split("/", 1)[-1].lower()

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.RESOURCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "details": dict(self.details),
        }

    def __str__(self) -> str:
        if self.details:
            try:
                packed = json.dumps(self.details, sort_keys=True, separators=(",", ":"), default=str)
            except (TypeError, ValueError):
                packed = str(self.details)
            return f"{self.code}: {self.message} [{packed}]"
        return f"{self.code}: {self.message}"


class ValidationError(LedgerError):
    code = "LEDGER/VALIDATION"
    category = ErrorCategory.VALIDATION


class ResourceError(LedgerError):
    code = "LEDGER/RESOURCE"
    category = ErrorCategory.RESOURCE


class StructuralError(LedgerError):
    code = "LEDGER/STRUCTURAL"
    category = ErrorCategory.STRUCTURAL


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class BidTooLow(ValidationError):
    code = "AUCTION/BID_TOO_LOW"

    def __init__(self, *, auction_id: int, amount: int, minimum: int) -> None:
        super().__init__(
            f"bid {amount} below minimum acceptable {minimum}",
            details={"auction_id": auction_id, "amount": amount, "minimum": minimum},
        )


class AuctionNotActive(ValidationError):
    code = "AUCTION/NOT_ACTIVE"

    def __init__(self, *, auction_id: int, phase: str) -> None:
        super().__init__(
            "auction is not accepting bids",
            details={"auction_id": auction_id, "phase": phase},
        )


class AuctionExpired(ValidationError):
    code = "AUCTION/EXPIRED"

    def __init__(self, *, auction_id: int, end_time: int, now: int) -> None:
        super().__init__(
            "auction bidding window has closed",
            details={"auction_id": auction_id, "end_time": end_time, "now": now},
        )


class TooEarly(ValidationError):
    code = "AUCTION/TOO_EARLY"

    def __init__(self, *, auction_id: int, end_time: int, now: int) -> None:
        super().__init__(
            "auction cannot be settled before its end time",
            details={"auction_id": auction_id, "end_time": end_time, "now": now},
        )


class AlreadyFinal(ValidationError):
    code = "AUCTION/ALREADY_FINAL"

    def __init__(self, *, auction_id: int, phase: str) -> None:
        super().__init__(
            "auction is already in a terminal phase",
            details={"auction_id": auction_id, "phase": phase},
        )


class NotAssetOwner(ValidationError):
    code = "AUCTION/NOT_ASSET_OWNER"

    def __init__(self, *, account: str, asset: str, owner: Optional[str] = None) -> None:
        super().__init__(
            "account does not control the asset",
            details={"account": account, "asset": asset, "owner": owner},
        )


class InvalidAuctionParams(ValidationError):
    code = "AUCTION/INVALID_PARAMS"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, details=details)


class NotSeller(ValidationError):
    code = "AUCTION/NOT_SELLER"

    def __init__(self, *, auction_id: int, caller: str) -> None:
        super().__init__(
            "only the seller may perform this action",
            details={"auction_id": auction_id, "caller": caller},
        )


class AuctionHasBids(ValidationError):
    code = "AUCTION/HAS_BIDS"

    def __init__(self, *, auction_id: int) -> None:
        super().__init__(
            "auction already accepted a bid and cannot be cancelled",
            details={"auction_id": auction_id},
        )


class NotAuthorized(ValidationError):
    code = "ACCESS/NOT_AUTHORIZED"

    def __init__(self, *, identity: str, action: str) -> None:
        super().__init__(
            f"identity is not authorized for {action!r}",
            details={"identity": identity, "action": action},
        )


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


class InsufficientEscrow(ResourceError):
    code = "ESCROW/INSUFFICIENT"

    def __init__(self, *, auction_id: int, account: str, balance: int, requested: int) -> None:
        super().__init__(
            f"escrow balance {balance} cannot cover {requested}",
            details={
                "auction_id": auction_id,
                "account": account,
                "balance": balance,
                "requested": requested,
            },
        )


class InsufficientProceeds(ResourceError):
    code = "PROCEEDS/INSUFFICIENT"

    def __init__(self, *, auction_id: int, seller: str, pending: int) -> None:
        super().__init__(
            "no seller proceeds pending withdrawal",
            details={"auction_id": auction_id, "seller": seller, "pending": pending},
        )


class InsufficientFunds(ResourceError):
    code = "FUNDS/INSUFFICIENT"

    def __init__(self, *, account: str, token: str, required: int, available: int) -> None:
        super().__init__(
            f"insufficient {token} funds: required {required}, available {available}",
            details={"account": account, "token": token, "required": required, "available": available},
        )


class TransferRejected(ResourceError):
    code = "FUNDS/TRANSFER_REJECTED"

    def __init__(self, *, account: str, token: str, amount: int, reason: str = "") -> None:
        super().__init__(
            "fund transfer rejected by the payment rail",
            details={"account": account, "token": token, "amount": amount, "reason": reason or None},
        )


class AssetNotTransferable(ResourceError):
    code = "ASSET/NOT_TRANSFERABLE"

    def __init__(self, *, asset: str) -> None:
        super().__init__("asset registry refused the transfer", details={"asset": asset})


# ---------------------------------------------------------------------------
# Structural
# ---------------------------------------------------------------------------


class LayoutMismatch(StructuralError):
    code = "LAYOUT/MISMATCH"

    def __init__(self, message: str, *, kind: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, details={"kind": kind, **details})


class IncompatibleLayout(StructuralError):
    code = "LAYOUT/INCOMPATIBLE"

    def __init__(self, message: str, *, current_version: int, proposed_version: int, **details: Any) -> None:
        super().__init__(
            message,
            details={"current_version": current_version, "proposed_version": proposed_version, **details},
        )


class NotFound(StructuralError):
    code = "LEDGER/NOT_FOUND"

    def __init__(self, what: str, **details: Any) -> None:
        super().__init__(f"{what} not found", details=details)


class UnknownLogicVersion(StructuralError):
    code = "UPGRADE/UNKNOWN_VERSION"

    def __init__(self, *, version: str) -> None:
        super().__init__("no logic implementation registered under this version", details={"version": version})


class SameImplementation(StructuralError):
    code = "UPGRADE/SAME"

    def __init__(self, *, identity: str, version: str) -> None:
        super().__init__(
            "requested logic version is already bound",
            details={"identity": identity, "version": version},
        )


class UpgradeBusy(StructuralError):
    code = "UPGRADE/BUSY"

    def __init__(self, *, identity: str, timeout_s: float) -> None:
        super().__init__(
            "in-flight operations did not drain before the upgrade deadline",
            details={"identity": identity, "timeout_s": timeout_s},
        )
