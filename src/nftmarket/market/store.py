"""Market store — the engine's entire mutable state in one object.

The store is owned by a MarketplaceEngine and handed to it at
construction, so every engine (and every test) works on its own
isolated state. Serialisation to and from plain dicts is used by the
StateStore for durable persistence.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from nftmarket.models.market import BASE_ASSET_ID, Listing


@dataclass
class MarketStore:
    """Listing mapping plus the process-wide counters and fee.

    Invariants:
        minted_count == next_asset_id - base_asset_id
        0 <= sold_count <= minted_count
    """
    listing_fee: int
    base_asset_id: int = BASE_ASSET_ID
    next_asset_id: int = BASE_ASSET_ID
    sold_count: int = 0
    listings: dict[int, Listing] = field(default_factory=dict)

    @classmethod
    def fresh(cls, listing_fee: int, base_asset_id: int = BASE_ASSET_ID) -> MarketStore:
        return cls(
            listing_fee=listing_fee,
            base_asset_id=base_asset_id,
            next_asset_id=base_asset_id,
        )

    @property
    def minted_count(self) -> int:
        return self.next_asset_id - self.base_asset_id

    def snapshot(self, asset_id: int) -> tuple[Listing | None, int, int]:
        """Copy of one listing plus the counters, for rollback."""
        listing = self.listings.get(asset_id)
        copy = dataclasses.replace(listing) if listing is not None else None
        return copy, self.next_asset_id, self.sold_count

    def restore(self, asset_id: int, snap: tuple[Listing | None, int, int]) -> None:
        listing, next_asset_id, sold_count = snap
        if listing is None:
            self.listings.pop(asset_id, None)
        else:
            self.listings[asset_id] = listing
        self.next_asset_id = next_asset_id
        self.sold_count = sold_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "listing_fee": self.listing_fee,
            "base_asset_id": self.base_asset_id,
            "next_asset_id": self.next_asset_id,
            "sold_count": self.sold_count,
            "listings": {
                str(asset_id): listing.to_dict()
                for asset_id, listing in sorted(self.listings.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketStore:
        listings = {
            int(key): Listing.from_dict(value)
            for key, value in data.get("listings", {}).items()
        }
        base = int(data.get("base_asset_id", BASE_ASSET_ID))
        return cls(
            listing_fee=int(data["listing_fee"]),
            base_asset_id=base,
            next_asset_id=int(data.get("next_asset_id", base)),
            sold_count=int(data.get("sold_count", 0)),
            listings=listings,
        )
