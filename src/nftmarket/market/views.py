"""Read-only views over the listing mapping.

Views are recomputed on every call from the full mapping; no secondary
index is maintained. Results are copies in ascending asset_id order, so
callers cannot mutate engine state through them and repeated calls over
unchanged state return identical sequences.
"""

from __future__ import annotations

import dataclasses
from typing import Callable, Mapping

from nftmarket.models.market import MARKETPLACE, Listing


def _select(
    listings: Mapping[int, Listing],
    predicate: Callable[[Listing], bool],
) -> list[Listing]:
    return [
        dataclasses.replace(listings[asset_id])
        for asset_id in sorted(listings)
        if predicate(listings[asset_id])
    ]


def listed_items(listings: Mapping[int, Listing]) -> list[Listing]:
    """Items currently escrowed by the marketplace."""
    return _select(listings, lambda l: l.custodian == MARKETPLACE and not l.sold)


def items_owned_by(listings: Mapping[int, Listing], who: str) -> list[Listing]:
    """Items whose recorded custodian is ``who``."""
    return _select(listings, lambda l: l.custodian == who)


def items_listed_by(listings: Mapping[int, Listing], who: str) -> list[Listing]:
    """Items ``who`` most recently listed, whether sold or still listed."""
    return _select(listings, lambda l: l.seller == who)
