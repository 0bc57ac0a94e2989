"""Marketplace service — caller-facing facade over the engine.

This is the primary interface for programmatic access. It wires:
- The marketplace engine (listing lifecycle, escrow, views)
- The asset registry and payment rail collaborators
- Persistence (event log, state store)

Every mutating operation returns a typed ServiceResult. Engine errors
are converted to failed results carrying the stable error kind; no
error is dropped. Committed mutations are appended to the event log
and then persisted. If persistence fails after the engine has moved
custody or funds, the in-memory state stays authoritative, the service
is flagged degraded, and the result carries a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from nftmarket import __version__
from nftmarket.config import MarketConfig
from nftmarket.errors import ErrorKind, MarketError
from nftmarket.market.engine import MarketplaceEngine
from nftmarket.market.invariants import check_invariants
from nftmarket.market.roles import RoleCheck, SingleOwnerRole
from nftmarket.market.store import MarketStore
from nftmarket.models.market import Listing
from nftmarket.payments.payment_rail import InMemoryPaymentRail, PaymentRail
from nftmarket.persistence.event_log import EventKind, EventLog, EventRecord
from nftmarket.persistence.state_store import StateStore
from nftmarket.registry.asset_registry import AssetRegistry, InMemoryAssetRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None


class MarketService:
    """Unified marketplace facade.

    Usage:
        service = MarketService(MarketConfig(owner_id="platform"))
        result = service.create_listing("alice", "ipfs://a", price=100, fee_paid=25)
        asset_id = result.data["asset_id"]
        result = service.purchase("bob", asset_id, payment=100)

    Persistence (optional):
        service = MarketService(config, event_log=log, state_store=store)
        # State is loaded on construction and saved on each mutation.
    """

    def __init__(
        self,
        config: MarketConfig,
        registry: Optional[AssetRegistry] = None,
        rail: Optional[PaymentRail] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        role_check: Optional[RoleCheck] = None,
    ) -> None:
        self._config = config
        self._event_log = event_log
        self._state_store = state_store

        market: Optional[MarketStore] = None
        if state_store is not None:
            market = state_store.load_market()
            registry = registry or state_store.load_registry()
            rail = rail or state_store.load_rail()
        if market is None:
            market = MarketStore.fresh(config.listing_fee, config.base_asset_id)

        self._registry = registry or InMemoryAssetRegistry(market.next_asset_id)
        self._rail = rail or InMemoryPaymentRail()
        self._engine = MarketplaceEngine(
            market,
            self._registry,
            self._rail,
            role_check or SingleOwnerRole(config.owner_id),
            config.fee_recipient,
            persist=self._persist_state,
        )
        # Continue numbering from the persisted log to avoid ID collisions.
        self._event_counter = event_log.count if event_log is not None else 0
        self._persistence_degraded: bool = False

    @property
    def engine(self) -> MarketplaceEngine:
        return self._engine

    @property
    def registry(self) -> AssetRegistry:
        return self._registry

    @property
    def rail(self) -> PaymentRail:
        return self._rail

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def create_listing(
        self,
        caller: str,
        content_ref: str,
        price: int,
        fee_paid: int,
    ) -> ServiceResult:
        """Mint a new asset and list it. Returns the new asset_id."""
        try:
            listing = self._engine.create_listing(caller, content_ref, price, fee_paid)
        except MarketError as e:
            return self._failure(e, caller, audit_kind=EventKind.LISTING_FAILED)
        except OSError as e:
            return self._persistence_failure(f"Persistence failure: {e}")
        return self._committed(
            EventKind.LISTING_CREATED, caller,
            {"asset_id": listing.asset_id, "listing": listing.to_dict()},
        )

    def relist_item(
        self,
        caller: str,
        asset_id: int,
        price: int,
        fee_paid: int,
    ) -> ServiceResult:
        """Relist an asset the caller holds."""
        try:
            listing = self._engine.relist_item(caller, asset_id, price, fee_paid)
        except MarketError as e:
            return self._failure(e, caller, asset_id, audit_kind=EventKind.LISTING_FAILED)
        except OSError as e:
            return self._persistence_failure(f"Persistence failure: {e}")
        return self._committed(
            EventKind.ITEM_RELISTED, caller,
            {"asset_id": asset_id, "listing": listing.to_dict()},
        )

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    def purchase(self, caller: str, asset_id: int, payment: int) -> ServiceResult:
        """Buy a listed asset for exactly its price."""
        try:
            receipt = self._engine.purchase(caller, asset_id, payment)
        except MarketError as e:
            return self._failure(e, caller, asset_id)
        return self._committed(
            EventKind.ITEM_SOLD, caller,
            {"asset_id": asset_id, "receipt": receipt.to_dict()},
        )

    # ------------------------------------------------------------------
    # Fee configuration
    # ------------------------------------------------------------------

    def set_listing_fee(self, caller: str, new_fee: int) -> ServiceResult:
        """Change the flat listing fee (privileged)."""
        try:
            previous = self._engine.set_listing_fee(caller, new_fee)
        except MarketError as e:
            return self._failure(e, caller)

        err = self._safe_persist()
        if err:
            self._engine.set_listing_fee(caller, previous)
            return self._persistence_failure(err)

        data: dict[str, Any] = {"listing_fee": new_fee, "previous_fee": previous}
        warning = self._record_event(EventKind.LISTING_FEE_UPDATED, caller, dict(data))
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def get_listing_fee(self) -> int:
        return self._engine.get_listing_fee()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_listed_items(self) -> list[Listing]:
        """All items currently escrowed, ascending by asset_id."""
        return self._engine.get_listed_items()

    def get_owned_items(self, identity: str) -> list[Listing]:
        """Items held by ``identity``, ascending by asset_id."""
        return self._engine.get_owned_items(identity)

    def get_listed_by(self, identity: str) -> list[Listing]:
        """Items ``identity`` listed, sold or not, ascending by asset_id."""
        return self._engine.get_listed_by(identity)

    def get_listing(self, asset_id: int) -> Optional[Listing]:
        return self._engine.get_listing(asset_id)

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        return {
            "version": __version__,
            "market": self._engine.stats(),
            "escrow_balance": self._rail.escrow_balance(),
            "fee_recipient": self._engine.fee_recipient,
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
        }

    def persist(self) -> Optional[str]:
        """Save a snapshot now, e.g. after funding the local payment rail."""
        return self._safe_persist()

    def check_invariants(self) -> ServiceResult:
        """Verify counters, listing states and registry custody agree."""
        errors = check_invariants(self._engine.store, self._registry)
        return ServiceResult(success=not errors, errors=errors)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _failure(
        self,
        error: MarketError,
        caller: str,
        asset_id: Optional[int] = None,
        audit_kind: Optional[EventKind] = None,
    ) -> ServiceResult:
        # Escrow failures happen after the record was written, so they are
        # audited; plain validation failures never touched state.
        if audit_kind is not None and error.kind == ErrorKind.CUSTODY_TRANSFER_FAILED:
            self._record_event(
                audit_kind, caller,
                {
                    "asset_id": error.asset_id if error.asset_id is not None else asset_id,
                    "error": error.message,
                },
            )
        logger.info("Operation by %s failed: %s", caller, error)
        return ServiceResult(
            success=False,
            errors=[error.message],
            error_kind=error.kind,
        )

    @staticmethod
    def _persistence_failure(message: str) -> ServiceResult:
        return ServiceResult(
            success=False,
            errors=[message],
            error_kind=ErrorKind.PERSISTENCE_FAILED,
        )

    def _committed(
        self,
        kind: EventKind,
        actor_id: str,
        data: dict[str, Any],
    ) -> ServiceResult:
        """Audit and persist a mutation the engine has already applied."""
        warnings: list[str] = []
        err = self._record_event(kind, actor_id, data)
        if err:
            warnings.append(err)
        warning = self._safe_persist_post_audit()
        if warning:
            warnings.append(warning)
        if warnings:
            data = dict(data, warning="; ".join(warnings))
        return ServiceResult(success=True, data=data)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event. Returns an error string or None."""
        if self._event_log is None:
            return None
        try:
            self._event_log.append(EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
            ))
        except (ValueError, OSError) as e:
            self._persistence_degraded = True
            logger.error("Event log failure recording %s: %s", kind.value, e)
            return f"Event log failure: {e}"
        return None

    def _persist_state(self) -> None:
        """Persist current state to the state store (if wired).

        Can raise OSError; the engine relies on that to roll back a
        listing whose record could not be made durable.
        """
        if self._state_store is None:
            return
        self._state_store.save(self._engine.store, self._registry, self._rail)

    def _safe_persist(self) -> Optional[str]:
        """Persist before the audit event; returns an error string on failure."""
        try:
            self._persist_state()
            return None
        except OSError as e:
            return f"Persistence failure: {e}"

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist after custody or funds have moved.

        MUST NOT roll back in-memory state. Sets the degraded flag and
        returns a warning instead.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("State store write failed: %s", e)
            return f"Persistence degraded: {e}; state committed in audit trail but StateStore is stale"
