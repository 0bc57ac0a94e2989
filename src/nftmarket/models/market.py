"""Marketplace models — listings, receipts, and lifecycle states.

One Listing exists per minted asset. It is created when the asset is
minted and mutated by listing, sale, and relisting. Listings are never
deleted: the record of who listed what, and who holds it now, is kept
for the lifetime of the marketplace.

Listing lifecycle: LISTED → SOLD → LISTED (relist) → ...
                   HELD → LISTED (only after a failed initial escrow)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


BASE_ASSET_ID = 1

# Custody sentinel for assets escrowed by the marketplace.
MARKETPLACE = "marketplace"


class ListingState(str, enum.Enum):
    """Lifecycle state of a listing."""
    LISTED = "listed"
    SOLD = "sold"
    HELD = "held"


@dataclass
class Listing:
    """Sale terms and current lifecycle state of one asset.

    Mutable: the engine applies state transitions in place, always
    under its lock and always with a snapshot to roll back to.
    """
    asset_id: int
    seller: str
    custodian: str
    price: int
    sold: bool = False
    state: ListingState = ListingState.LISTED
    fee_paid: int = 0
    content_ref: str = ""
    buyer: Optional[str] = None
    listed_utc: Optional[datetime] = None
    sold_utc: Optional[datetime] = None

    @property
    def is_listed(self) -> bool:
        """Escrowed by the marketplace and awaiting sale."""
        return self.custodian == MARKETPLACE and not self.sold

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "seller": self.seller,
            "custodian": self.custodian,
            "price": self.price,
            "sold": self.sold,
            "state": self.state.value,
            "fee_paid": self.fee_paid,
            "content_ref": self.content_ref,
            "buyer": self.buyer,
            "listed_utc": _iso(self.listed_utc),
            "sold_utc": _iso(self.sold_utc),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Listing:
        return Listing(
            asset_id=int(data["asset_id"]),
            seller=data["seller"],
            custodian=data["custodian"],
            price=int(data["price"]),
            sold=bool(data["sold"]),
            state=ListingState(data["state"]),
            fee_paid=int(data.get("fee_paid", 0)),
            content_ref=data.get("content_ref", ""),
            buyer=data.get("buyer"),
            listed_utc=_parse(data.get("listed_utc")),
            sold_utc=_parse(data.get("sold_utc")),
        )


@dataclass(frozen=True)
class Receipt:
    """Outcome of a completed purchase.

    Invariant: seller_proceeds == price. The listing fee was collected
    from the seller at listing time and is released from escrow here.
    """
    asset_id: int
    buyer: str
    seller: str
    price: int
    fee_recipient: str
    fee_disbursed: int
    seller_proceeds: int
    purchased_utc: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "price": self.price,
            "fee_recipient": self.fee_recipient,
            "fee_disbursed": self.fee_disbursed,
            "seller_proceeds": self.seller_proceeds,
            "purchased_utc": _iso(self.purchased_utc),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
