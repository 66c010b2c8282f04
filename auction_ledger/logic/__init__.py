from __future__ import annotations

"""
auction_ledger.logic
--------------------

Auction logic versions and the registry the coordinator resolves them from.

    registry = default_registry()
    registry.get("v2")        -> AuctionLogicV2
    registry.get("v9")        -> raises UnknownLogicVersion
"""

from typing import Dict, Iterable, List, Type

from ..errors import UnknownLogicVersion
from .v1 import AuctionLogicV1
from .v2 import AuctionLogicV2

LogicClass = Type[AuctionLogicV1]


class LogicRegistry:
    def __init__(self, impls: Iterable[LogicClass] = ()) -> None:
        self._impls: Dict[str, LogicClass] = {}
        for cls in impls:
            self.register(cls)

    def register(self, cls: LogicClass) -> LogicClass:
        if cls.VERSION in self._impls and self._impls[cls.VERSION] is not cls:
            raise ValueError(f"logic version {cls.VERSION!r} already registered")
        self._impls[cls.VERSION] = cls
        return cls

    def get(self, version: str) -> LogicClass:
        try:
            return self._impls[version]
        except KeyError:
            raise UnknownLogicVersion(version=version) from None

    def versions(self) -> List[str]:
        return sorted(self._impls)

    def __contains__(self, version: object) -> bool:
        return version in self._impls


def default_registry() -> LogicRegistry:
    return LogicRegistry([AuctionLogicV1, AuctionLogicV2])


__all__ = ["AuctionLogicV1", "AuctionLogicV2", "LogicRegistry", "default_registry"]
