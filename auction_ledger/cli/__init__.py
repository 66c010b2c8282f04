"""Command line interface for auction_ledger (`auction-ledger`)."""

from .main import app

__all__ = ["app"]
