"""Marketplace invariant checks.

Returns human-readable violations rather than raising, so the checker
can be run against a live engine, a loaded snapshot, or a damaged
state file and report everything wrong in one pass.
"""

from __future__ import annotations

from typing import Optional

from nftmarket.errors import RegistryError
from nftmarket.market.store import MarketStore
from nftmarket.models.market import MARKETPLACE, ListingState
from nftmarket.registry.asset_registry import AssetRegistry


def check_invariants(
    store: MarketStore,
    registry: Optional[AssetRegistry] = None,
) -> list[str]:
    """Check counters, per-listing consistency and registry agreement."""
    errors: list[str] = []

    # --- Counters ---
    if store.next_asset_id < store.base_asset_id:
        errors.append(
            f"next_asset_id {store.next_asset_id} is below base {store.base_asset_id}"
        )
    if store.minted_count != len(store.listings):
        errors.append(
            f"minted_count {store.minted_count} != listing records {len(store.listings)}"
        )
    sold = sum(1 for l in store.listings.values() if l.sold)
    if store.sold_count != sold:
        errors.append(f"sold_count {store.sold_count} != sold listings {sold}")
    if not 0 <= store.sold_count <= store.minted_count:
        errors.append(
            f"sold_count {store.sold_count} outside [0, {store.minted_count}]"
        )
    if store.listing_fee < 0:
        errors.append(f"listing_fee {store.listing_fee} is negative")

    # --- Listings ---
    for asset_id, listing in sorted(store.listings.items()):
        label = f"asset {asset_id}"
        if listing.asset_id != asset_id:
            errors.append(f"{label}: keyed under wrong id {listing.asset_id}")
        if not store.base_asset_id <= asset_id < store.next_asset_id:
            errors.append(f"{label}: id outside issued range")
        if listing.price <= 0:
            errors.append(f"{label}: non-positive price {listing.price}")
        if listing.state == ListingState.LISTED:
            if listing.custodian != MARKETPLACE or listing.sold:
                errors.append(f"{label}: LISTED but not escrowed by the marketplace")
        elif listing.state == ListingState.SOLD:
            if not listing.sold or listing.custodian != listing.buyer:
                errors.append(f"{label}: SOLD but custodian is not the buyer")
        elif listing.state == ListingState.HELD:
            if listing.sold or listing.custodian == MARKETPLACE:
                errors.append(f"{label}: HELD but escrowed or flagged sold")

        if registry is not None:
            try:
                holder = registry.current_custodian(asset_id)
            except RegistryError as e:
                errors.append(f"{label}: {e}")
                continue
            if holder != listing.custodian:
                errors.append(
                    f"{label}: registry holder {holder} != recorded custodian "
                    f"{listing.custodian}"
                )

    return errors
