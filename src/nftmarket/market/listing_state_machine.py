"""Listing state machine — enforces valid lifecycle transitions.

Listing lifecycle:
    LISTED → SOLD     (purchase completes)
    SOLD → LISTED     (current owner relists)
    HELD → LISTED     (minter retries escrow after a failed first listing)

State semantics:
- LISTED: custody held by the marketplace, awaiting a buyer.
- SOLD: custody released to the buyer; the buyer may relist.
- HELD: minted but never escrowed; the minter still holds the asset.

Fail-closed: invalid transitions return errors. There are no implicit
transitions and no terminal state; an asset can cycle indefinitely.
"""

from __future__ import annotations

from nftmarket.models.market import Listing, ListingState


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[ListingState, set[ListingState]] = {
    ListingState.LISTED: {ListingState.SOLD},
    ListingState.SOLD: {ListingState.LISTED},
    ListingState.HELD: {ListingState.LISTED},
}


class ListingStateMachine:
    """Validates and applies listing state transitions.

    Pure computation: validates transitions only. Custody, payment,
    logging and persistence are handled by the engine.
    """

    @staticmethod
    def validate_transition(
        listing: Listing,
        target: ListingState,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = listing.state
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid listing transition for asset {listing.asset_id}: "
                f"{current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(
        listing: Listing,
        target: ListingState,
    ) -> list[str]:
        """Validate and apply a state transition.

        On success mutates listing.state and the derived sold flag.
        Custodian changes are the engine's job because they must be
        mirrored in the asset registry.
        """
        errors = ListingStateMachine.validate_transition(listing, target)
        if errors:
            return errors
        listing.state = target
        listing.sold = target == ListingState.SOLD
        return []

    @staticmethod
    def valid_transitions(state: ListingState) -> set[ListingState]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(state, set()))
