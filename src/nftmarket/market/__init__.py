"""Marketplace core — listing lifecycle, escrow, and query views.

Sellers mint and list assets into marketplace custody, buyers purchase
them for the exact asking price, and owners may relist what they hold.
"""

from nftmarket.market.engine import MarketplaceEngine
from nftmarket.market.listing_state_machine import ListingStateMachine
from nftmarket.market.roles import RoleCheck, SingleOwnerRole
from nftmarket.market.store import MarketStore

__all__ = [
    "ListingStateMachine",
    "MarketStore",
    "MarketplaceEngine",
    "RoleCheck",
    "SingleOwnerRole",
]
