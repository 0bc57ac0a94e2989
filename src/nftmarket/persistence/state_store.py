"""State store — durable snapshot of marketplace state.

Holds one JSON document with a section per component:
    market: listings keyed by asset id, counters, listing fee
    registry: holders and content refs (in-memory registry only)
    payments: balances (in-memory rail only)

Writes go to a sibling temp file which then replaces the target, so a
crash mid-write leaves the previous snapshot intact.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from nftmarket.market.store import MarketStore
from nftmarket.payments.payment_rail import InMemoryPaymentRail
from nftmarket.registry.asset_registry import InMemoryAssetRegistry


class StateStore:
    """JSON-file persistence for the marketplace and its local collaborators.

    Usage:
        store = StateStore(Path("data/state.json"))
        market = store.load_market() or MarketStore.fresh(listing_fee=25)
        ...
        store.save(market, registry, rail)
    """

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path
        self._data: dict[str, Any] = {}
        if storage_path.exists():
            self._data = json.loads(storage_path.read_text(encoding="utf-8"))

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    def load_market(self) -> Optional[MarketStore]:
        section = self._data.get("market")
        return MarketStore.from_dict(section) if section is not None else None

    def load_registry(self) -> Optional[InMemoryAssetRegistry]:
        section = self._data.get("registry")
        return InMemoryAssetRegistry.from_dict(section) if section is not None else None

    def load_rail(self) -> Optional[InMemoryPaymentRail]:
        section = self._data.get("payments")
        return InMemoryPaymentRail.from_dict(section) if section is not None else None

    def save(
        self,
        market: MarketStore,
        registry: Any = None,
        rail: Any = None,
    ) -> None:
        """Write a full snapshot. Collaborators without ``to_dict`` are skipped."""
        data: dict[str, Any] = {"market": market.to_dict()}
        if hasattr(registry, "to_dict"):
            data["registry"] = registry.to_dict()
        if hasattr(rail, "to_dict"):
            data["payments"] = rail.to_dict()

        tmp = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._storage_path)
        self._data = data
