"""Core data models for the marketplace."""

from nftmarket.models.market import (
    BASE_ASSET_ID,
    MARKETPLACE,
    Listing,
    ListingState,
    Receipt,
)

__all__ = [
    "BASE_ASSET_ID",
    "MARKETPLACE",
    "Listing",
    "ListingState",
    "Receipt",
]
