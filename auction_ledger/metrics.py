from __future__ import annotations

"""
Prometheus metrics for the auction ledger.

Counters and histograms covering:
- auctions created, bids accepted / rejected (by reason)
- settlements by outcome (settled | no_bids) and cancellations
- escrow and proceeds withdrawals
- upgrades by result (ok | unauthorized | incompatible | busy | same | failed)
- operation latency by entrypoint

A dedicated registry lets embedding apps merge or expose it directly
(`render()` returns the text exposition format).
"""


import time
from contextlib import contextmanager
from typing import Iterator, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

REGISTRY = CollectorRegistry()

AUCTIONS_CREATED = Counter(
    "auction_ledger_auctions_created_total",
    "Total auctions created by logic version.",
    labelnames=("logic",),
    registry=REGISTRY,
)

BIDS_ACCEPTED = Counter(
    "auction_ledger_bids_accepted_total",
    "Total bids accepted by logic version.",
    labelnames=("logic",),
    registry=REGISTRY,
)

BIDS_REJECTED = Counter(
    "auction_ledger_bids_rejected_total",
    "Total bids rejected by reason.",
    labelnames=("reason",),
    registry=REGISTRY,
)

SETTLEMENTS = Counter(
    "auction_ledger_settlements_total",
    "Total auctions finalized by outcome.",
    labelnames=("outcome",),  # settled | no_bids | cancelled
    registry=REGISTRY,
)

WITHDRAWALS = Counter(
    "auction_ledger_withdrawals_total",
    "Total successful withdrawals by kind.",
    labelnames=("kind",),  # escrow | proceeds
    registry=REGISTRY,
)

UPGRADES = Counter(
    "auction_ledger_upgrades_total",
    "Total upgrade attempts by result.",
    labelnames=("result",),
    registry=REGISTRY,
)

COMPENSATIONS = Counter(
    "auction_ledger_compensations_total",
    "Collaborator effects reversed after a failed commit, by operation.",
    labelnames=("op",),
    registry=REGISTRY,
)

_LATENCY_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

OP_SECONDS = Histogram(
    "auction_ledger_operation_seconds",
    "Latency of ledger operations dispatched through a stable identity.",
    labelnames=("op",),
    buckets=_LATENCY_BUCKETS,
    registry=REGISTRY,
)

UPGRADE_DRAIN_SECONDS = Histogram(
    "auction_ledger_upgrade_drain_seconds",
    "Time spent waiting for in-flight operations before an upgrade.",
    buckets=_LATENCY_BUCKETS,
    registry=REGISTRY,
)


@contextmanager
def timed(op: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        OP_SECONDS.labels(op=op).observe(time.perf_counter() - start)


def render() -> Tuple[bytes, str]:
    """Return (payload, content_type) for a /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "REGISTRY",
    "AUCTIONS_CREATED",
    "BIDS_ACCEPTED",
    "BIDS_REJECTED",
    "SETTLEMENTS",
    "WITHDRAWALS",
    "UPGRADES",
    "COMPENSATIONS",
    "OP_SECONDS",
    "UPGRADE_DRAIN_SECONDS",
    "timed",
    "render",
]
