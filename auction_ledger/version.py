from __future__ import annotations

"""
auction_ledger.version
----------------------

Version of the installed `auction-ledger` distribution, or BASE_VERSION for
source checkouts that were never installed.
"""

from importlib.metadata import PackageNotFoundError, version as _pkg_version

BASE_VERSION = "0.2.0"

try:
    __version__ = _pkg_version("auction-ledger")
except PackageNotFoundError:
    __version__ = BASE_VERSION

__all__ = ["__version__", "BASE_VERSION"]
