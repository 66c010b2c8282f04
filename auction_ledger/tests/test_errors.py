from __future__ import annotations

import json

import pytest

from auction_ledger.errors import (BidTooLow, ErrorCategory, IncompatibleLayout, InsufficientEscrow, LedgerError,
                                   NotFound, ResourceError, StructuralError, TransferRejected, UpgradeBusy,
                                   ValidationError)


def test_error_shape_and_category():
    e = BidTooLow(auction_id=1, amount=50, minimum=100)
    assert isinstance(e, ValidationError) and isinstance(e, LedgerError)
    assert e.category is ErrorCategory.VALIDATION
    assert e.reason == "bid_too_low"
    assert not e.retryable
    d = e.to_dict()
    assert d["code"] == "AUCTION/BID_TOO_LOW"
    assert d["details"] == {"auction_id": 1, "amount": 50, "minimum": 100}
    json.dumps(d)


def test_str_carries_code_and_details():
    s = str(InsufficientEscrow(auction_id=3, account="bob", balance=0, requested=5))
    assert s.startswith("ESCROW/INSUFFICIENT: ")
    assert '"requested":5' in s


@pytest.mark.parametrize(
    "err, base, retryable",
    [
        (TransferRejected(account="a", token="native", amount=1), ResourceError, True),
        (NotFound("auction", auction_id=1), StructuralError, False),
        (UpgradeBusy(identity="0x1", timeout_s=1.0), StructuralError, False),
        (IncompatibleLayout("nope", current_version=1, proposed_version=2), StructuralError, False),
    ],
)
def test_hierarchy(err, base, retryable):
    assert isinstance(err, base)
    assert err.retryable is retryable


def test_none_details_are_dropped():
    e = TransferRejected(account="a", token="native", amount=1)
    assert "reason" not in e.details
