from __future__ import annotations
"""
auction_ledger
--------------

Upgradeable sealed-asset auction ledger.

The package keeps the durable auction ledger (auctions, bids, escrow and seller
proceeds) apart from the logic that operates on it, so that the logic can be
swapped for a newer version behind a stable identity without losing or
reinterpreting in-flight state.

Public surface (lazily loaded):
- config, errors, logging, metrics, types
- layout, store, locks, db
- interfaces, adapters
- logic, migration, coordinator, inspect, cli
"""


from typing import List

from .version import __version__

__all__: List[str] = [
    "__version__",
    # lazily importable subpackages/modules
    "config",
    "errors",
    "logging",
    "metrics",
    "types",
    "layout",
    "store",
    "locks",
    "db",
    "interfaces",
    "adapters",
    "logic",
    "migration",
    "coordinator",
    "inspect",
    "cli",
]

# --- Lazy module loader (PEP 562) -------------------------------------------------
import importlib


_lazy_modules = set(__all__) - {"__version__"}


def __getattr__(name: str):
    if name in _lazy_modules:
        return importlib.import_module(f".{name}", __name__)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(set(globals().keys()) | _lazy_modules)

