"""Marketplace engine — the listing lifecycle and escrow state machine.

The engine couples three things that must never drift apart:
    1. the listing record (seller, custodian, price, sold flag),
    2. custody in the asset registry,
    3. funds in the payment rail's escrow account.

Listing:
    validate → collect fee → write listing → persist → escrow custody
    A failed custody transfer restores the prior record and refunds the fee.

Purchase (atomic):
    collect payment → mark SOLD → release custody to buyer
    → bump sold count → pay listing fee to platform → pay seller
    Any failure compensates every completed step in reverse order and
    restores the record and counters before the error is raised.

Concurrency: one re-entrant lock serialises all mutations and all
views. A per-asset in-flight set rejects any purchase or relist of an
asset that is mid-settlement, e.g. from a payout callback. The escrow
placeholder identity can never act as a caller.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from nftmarket.errors import (
    AlreadyListed,
    AlreadySold,
    CustodyTransferFailed,
    DisbursementFailed,
    FeeMismatch,
    InsufficientBalanceError,
    InsufficientFunds,
    InvalidFee,
    InvalidPrice,
    MarketError,
    NotListed,
    NotOwner,
    PaymentError,
    PaymentMismatch,
    RegistryError,
    RollbackIncomplete,
    Unauthorized,
)
from nftmarket.market import views
from nftmarket.market.listing_state_machine import ListingStateMachine
from nftmarket.market.roles import RoleCheck
from nftmarket.market.store import MarketStore
from nftmarket.models.market import MARKETPLACE, Listing, ListingState, Receipt
from nftmarket.payments.payment_rail import PaymentRail
from nftmarket.registry.asset_registry import AssetRegistry

logger = logging.getLogger(__name__)


class MarketplaceEngine:
    """Owns a MarketStore and enforces every rule over it.

    Usage:
        engine = MarketplaceEngine(
            MarketStore.fresh(listing_fee=25),
            InMemoryAssetRegistry(),
            InMemoryPaymentRail(),
            SingleOwnerRole("platform"),
            fee_recipient="platform",
        )
        listing = engine.create_listing("alice", "ipfs://a", price=100, fee_paid=25)
        receipt = engine.purchase("bob", listing.asset_id, payment=100)

    All operations raise MarketError subclasses on failure. ``persist``
    is called with the listing record updated and before custody is
    requested, so a crash mid-listing still leaves a durable record.
    """

    def __init__(
        self,
        store: MarketStore,
        registry: AssetRegistry,
        rail: PaymentRail,
        role_check: RoleCheck,
        fee_recipient: str,
        persist: Optional[Callable[[], None]] = None,
    ) -> None:
        if not fee_recipient or fee_recipient == MARKETPLACE:
            raise ValueError(f"Invalid fee recipient: {fee_recipient!r}")
        self._store = store
        self._registry = registry
        self._rail = rail
        self._role_check = role_check
        self._fee_recipient = fee_recipient
        self._persist = persist or (lambda: None)
        self._lock = threading.RLock()
        self._in_flight: set[int] = set()

    @property
    def store(self) -> MarketStore:
        return self._store

    @property
    def fee_recipient(self) -> str:
        return self._fee_recipient

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def create_listing(
        self,
        caller: str,
        content_ref: str,
        price: int,
        fee_paid: int,
    ) -> Listing:
        """Mint a new asset to ``caller`` and list it for sale."""
        with self._lock:
            self._check_caller(caller)
            self._validate_terms(price, fee_paid)
            fee_transfer = self._collect(caller, fee_paid)

            try:
                asset_id = self._registry.mint(caller, content_ref)
            except RegistryError as e:
                self._reverse(fee_transfer)
                raise CustodyTransferFailed(f"Mint rejected: {e}") from e
            if asset_id != self._store.next_asset_id or asset_id in self._store.listings:
                self._reverse(fee_transfer)
                raise CustodyTransferFailed(
                    f"Registry issued asset {asset_id}, expected {self._store.next_asset_id}",
                    asset_id=asset_id,
                )

            # The record exists from mint time on, even if escrow fails.
            self._store.listings[asset_id] = Listing(
                asset_id=asset_id,
                seller=caller,
                custodian=caller,
                price=price,
                state=ListingState.HELD,
                content_ref=content_ref,
            )
            self._store.next_asset_id = asset_id + 1

            return self._escrow(caller, asset_id, price, fee_paid, fee_transfer)

    def relist_item(
        self,
        caller: str,
        asset_id: int,
        price: int,
        fee_paid: int,
    ) -> Listing:
        """List an asset ``caller`` currently holds."""
        with self._lock:
            self._check_caller(caller)
            self._validate_terms(price, fee_paid)
            listing = self._store.listings.get(asset_id)
            if listing is None:
                raise NotListed(f"No listing for asset {asset_id}")
            if asset_id in self._in_flight:
                raise AlreadySold(f"Asset {asset_id} is being sold")
            try:
                holder = self._registry.current_custodian(asset_id)
            except RegistryError as e:
                raise NotListed(f"Asset {asset_id} unknown to registry: {e}") from e
            if holder != caller:
                raise NotOwner(f"Asset {asset_id} is held by {holder}, not {caller}")
            errors = ListingStateMachine.validate_transition(listing, ListingState.LISTED)
            if errors:
                raise AlreadyListed(errors[0])

            fee_transfer = self._collect(caller, fee_paid)
            return self._escrow(caller, asset_id, price, fee_paid, fee_transfer)

    def _escrow(
        self,
        caller: str,
        asset_id: int,
        price: int,
        fee_paid: int,
        fee_transfer: Optional[str],
    ) -> Listing:
        snap = self._store.snapshot(asset_id)
        listing = self._store.listings[asset_id]
        was_sold = listing.state == ListingState.SOLD

        errors = ListingStateMachine.apply_transition(listing, ListingState.LISTED)
        if errors:
            self._reverse(fee_transfer)
            raise AlreadyListed(errors[0], asset_id=asset_id)
        listing.seller = caller
        listing.custodian = MARKETPLACE
        listing.price = price
        listing.fee_paid = fee_paid
        listing.buyer = None
        listing.listed_utc = datetime.now(timezone.utc)
        listing.sold_utc = None
        if was_sold:
            self._store.sold_count -= 1

        try:
            self._persist()
            self._registry.transfer_custody(asset_id, caller, MARKETPLACE)
        except (RegistryError, OSError) as e:
            logger.warning("Escrow of asset %d failed, rolling back: %s", asset_id, e)
            self._store.restore(asset_id, snap)
            self._reverse(fee_transfer)
            try:
                self._persist()
            except OSError as persist_error:
                logger.error("Rollback of asset %d not persisted: %s", asset_id, persist_error)
            if isinstance(e, OSError):
                raise
            raise CustodyTransferFailed(
                f"Registry rejected escrow of asset {asset_id}: {e}",
                asset_id=asset_id,
            ) from e

        logger.info(
            "Asset %d listed by %s at %d%s",
            asset_id, caller, price, " (relist)" if was_sold else "",
        )
        return dataclasses.replace(listing)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    def purchase(self, caller: str, asset_id: int, payment: int) -> Receipt:
        """Buy a listed asset for exactly its price."""
        with self._lock:
            self._check_caller(caller)
            listing = self._store.listings.get(asset_id)
            if listing is None:
                raise NotListed(f"No listing for asset {asset_id}")
            if listing.sold or asset_id in self._in_flight:
                raise AlreadySold(f"Asset {asset_id} has already been sold")
            if not listing.is_listed or listing.state != ListingState.LISTED:
                raise NotListed(f"Asset {asset_id} is not listed for sale")
            if payment != listing.price:
                raise PaymentMismatch(
                    f"Asset {asset_id} costs {listing.price}, received {payment}"
                )

            self._in_flight.add(asset_id)
            try:
                return self._settle(caller, asset_id, payment)
            finally:
                self._in_flight.discard(asset_id)

    def _settle(self, buyer: str, asset_id: int, payment: int) -> Receipt:
        snap = self._store.snapshot(asset_id)
        listing = self._store.listings[asset_id]
        seller = listing.seller
        fee = listing.fee_paid
        now = datetime.now(timezone.utc)
        undo: list[Callable[[], Any]] = []

        try:
            payment_transfer = self._collect(buyer, payment)
            undo.append(lambda: self._reverse(payment_transfer))

            errors = ListingStateMachine.apply_transition(listing, ListingState.SOLD)
            if errors:
                raise AlreadySold(errors[0], asset_id=asset_id)
            listing.custodian = buyer
            listing.buyer = buyer
            listing.sold_utc = now

            self._transfer_custody(asset_id, MARKETPLACE, buyer)
            undo.append(
                lambda: self._registry.transfer_custody(asset_id, buyer, MARKETPLACE)
            )
            self._store.sold_count += 1

            if fee > 0:
                fee_transfer = self._disburse(self._fee_recipient, fee)
                undo.append(lambda: self._reverse(fee_transfer))
            self._disburse(seller, payment)
        except MarketError as e:
            logger.warning("Purchase of asset %d by %s rolled back: %s", asset_id, buyer, e)
            self._store.restore(asset_id, snap)
            failures: list[str] = []
            for action in reversed(undo):
                try:
                    action()
                except (RegistryError, PaymentError) as undo_error:
                    failures.append(str(undo_error))
            if failures:
                logger.error(
                    "Rollback of asset %d purchase incomplete: %s",
                    asset_id, "; ".join(failures),
                )
                raise RollbackIncomplete(
                    f"Purchase of asset {asset_id} failed ({e.message}) and could "
                    f"not be fully undone: {'; '.join(failures)}",
                    asset_id=asset_id,
                ) from e
            raise

        logger.info("Asset %d sold by %s to %s for %d", asset_id, seller, buyer, payment)
        return Receipt(
            asset_id=asset_id,
            buyer=buyer,
            seller=seller,
            price=payment,
            fee_recipient=self._fee_recipient,
            fee_disbursed=fee,
            seller_proceeds=payment,
            purchased_utc=now,
        )

    # ------------------------------------------------------------------
    # Fee configuration
    # ------------------------------------------------------------------

    def set_listing_fee(self, caller: str, new_fee: int) -> int:
        """Change the listing fee. Returns the previous fee."""
        with self._lock:
            if not self._role_check.is_admin(caller):
                raise Unauthorized(f"{caller} may not change the listing fee")
            if new_fee < 0:
                raise InvalidFee(f"Listing fee must be non-negative, got {new_fee}")
            previous = self._store.listing_fee
            self._store.listing_fee = new_fee
            logger.info("Listing fee changed %d → %d by %s", previous, new_fee, caller)
            return previous

    def get_listing_fee(self) -> int:
        with self._lock:
            return self._store.listing_fee

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_listed_items(self) -> list[Listing]:
        with self._lock:
            return views.listed_items(self._store.listings)

    def get_owned_items(self, who: str) -> list[Listing]:
        with self._lock:
            return views.items_owned_by(self._store.listings, who)

    def get_listed_by(self, who: str) -> list[Listing]:
        with self._lock:
            return views.items_listed_by(self._store.listings, who)

    def get_listing(self, asset_id: int) -> Optional[Listing]:
        with self._lock:
            listing = self._store.listings.get(asset_id)
            return dataclasses.replace(listing) if listing is not None else None

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "minted_count": self._store.minted_count,
                "sold_count": self._store.sold_count,
                "listed_count": len(views.listed_items(self._store.listings)),
                "listing_fee": self._store.listing_fee,
                "next_asset_id": self._store.next_asset_id,
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_caller(self, caller: str) -> None:
        # The escrow account shares the placeholder's name.
        if not caller or caller == MARKETPLACE:
            raise Unauthorized(f"{caller!r} may not act as a caller")

    def _validate_terms(self, price: int, fee_paid: int) -> None:
        if price <= 0:
            raise InvalidPrice(f"Price must be positive, got {price}")
        if fee_paid != self._store.listing_fee:
            raise FeeMismatch(
                f"Listing fee is {self._store.listing_fee}, received {fee_paid}"
            )

    def _collect(self, payer: str, amount: int) -> Optional[str]:
        if amount == 0:
            return None
        try:
            return self._rail.collect(payer, amount)
        except InsufficientBalanceError as e:
            raise InsufficientFunds(str(e)) from e
        except PaymentError as e:
            raise DisbursementFailed(f"Could not collect {amount} from {payer}: {e}") from e

    def _disburse(self, to: str, amount: int) -> str:
        try:
            return self._rail.pay(to, amount)
        except PaymentError as e:
            raise DisbursementFailed(f"Payment of {amount} to {to} failed: {e}") from e

    def _reverse(self, transfer_id: Optional[str]) -> None:
        if transfer_id is not None:
            self._rail.reverse(transfer_id)

    def _transfer_custody(self, asset_id: int, from_party: str, to_party: str) -> None:
        try:
            self._registry.transfer_custody(asset_id, from_party, to_party)
        except RegistryError as e:
            raise CustodyTransferFailed(
                f"Registry rejected transfer of asset {asset_id} to {to_party}: {e}"
            ) from e
