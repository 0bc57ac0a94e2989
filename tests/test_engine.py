"""Tests for the marketplace engine — proves escrow lifecycle invariants hold."""

import threading

import pytest

from nftmarket.errors import (
    AlreadySold,
    CustodyTransferFailed,
    DisbursementFailed,
    ErrorKind,
    FeeMismatch,
    InsufficientFunds,
    InvalidFee,
    InvalidPrice,
    MarketError,
    NotListed,
    NotOwner,
    PaymentMismatch,
    RollbackIncomplete,
    Unauthorized,
)
from nftmarket.market.engine import MarketplaceEngine
from nftmarket.market.listing_state_machine import ListingStateMachine
from nftmarket.market.roles import SingleOwnerRole
from nftmarket.market.store import MarketStore
from nftmarket.models.market import MARKETPLACE, ListingState
from nftmarket.payments.payment_rail import InMemoryPaymentRail
from nftmarket.registry.asset_registry import InMemoryAssetRegistry


FEE = 25


def _make_engine(
    funded: tuple[str, ...] = ("alice", "bob", "carol"),
    persist=None,
) -> tuple[MarketplaceEngine, InMemoryAssetRegistry, InMemoryPaymentRail]:
    registry = InMemoryAssetRegistry()
    rail = InMemoryPaymentRail()
    for party in funded:
        rail.deposit(party, 1000)
    engine = MarketplaceEngine(
        MarketStore.fresh(listing_fee=FEE),
        registry,
        rail,
        SingleOwnerRole("platform"),
        fee_recipient="platform",
        persist=persist,
    )
    return engine, registry, rail


class TestCreateListing:
    def test_create_listing(self) -> None:
        engine, registry, rail = _make_engine()
        listing = engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        assert listing.asset_id == 1
        assert listing.sold is False
        assert listing.custodian == MARKETPLACE
        assert listing.seller == "alice"
        assert listing.state == ListingState.LISTED
        assert listing.fee_paid == FEE
        assert listing.content_ref == "ipfs://1"
        assert registry.current_custodian(1) == MARKETPLACE
        assert rail.balance("alice") == 1000 - FEE
        assert rail.escrow_balance() == FEE

    def test_ids_are_sequential_and_unique(self) -> None:
        engine, _, _ = _make_engine()
        ids = [
            engine.create_listing("alice", f"ipfs://{i}", price=10, fee_paid=FEE).asset_id
            for i in range(5)
        ]
        assert ids == [1, 2, 3, 4, 5]
        assert engine.store.minted_count == 5

    def test_zero_price_rejected(self) -> None:
        engine, _, rail = _make_engine()
        with pytest.raises(InvalidPrice):
            engine.create_listing("alice", "ipfs://1", price=0, fee_paid=FEE)
        assert engine.store.next_asset_id == 1
        assert rail.balance("alice") == 1000

    def test_negative_price_rejected(self) -> None:
        engine, _, _ = _make_engine()
        with pytest.raises(InvalidPrice):
            engine.create_listing("alice", "ipfs://1", price=-5, fee_paid=FEE)

    def test_fee_must_match_exactly(self) -> None:
        engine, _, rail = _make_engine()
        for fee in (FEE - 1, FEE + 1, 0):
            with pytest.raises(FeeMismatch):
                engine.create_listing("alice", "ipfs://1", price=100, fee_paid=fee)
        assert engine.store.listings == {}
        assert rail.balance("alice") == 1000

    def test_escrow_identity_cannot_list(self) -> None:
        engine, _, rail = _make_engine(funded=(MARKETPLACE,))
        for caller in (MARKETPLACE, ""):
            with pytest.raises(Unauthorized):
                engine.create_listing(caller, "ipfs://1", price=100, fee_paid=FEE)
        assert engine.store.listings == {}
        assert rail.escrow_balance() == 1000

    def test_unexpected_registry_id_names_asset(self) -> None:
        registry = InMemoryAssetRegistry(next_asset_id=5)
        rail = InMemoryPaymentRail()
        rail.deposit("alice", 1000)
        engine = MarketplaceEngine(
            MarketStore.fresh(listing_fee=FEE), registry, rail,
            SingleOwnerRole("platform"), fee_recipient="platform",
        )
        with pytest.raises(CustodyTransferFailed) as exc:
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        assert exc.value.asset_id == 5
        assert rail.balance("alice") == 1000
        assert engine.store.listings == {}

    def test_escrow_identity_cannot_receive_fees(self) -> None:
        with pytest.raises(ValueError):
            MarketplaceEngine(
                MarketStore.fresh(listing_fee=FEE), InMemoryAssetRegistry(),
                InMemoryPaymentRail(), SingleOwnerRole("platform"),
                fee_recipient=MARKETPLACE,
            )

    def test_unfunded_seller_rejected(self) -> None:
        engine, _, _ = _make_engine(funded=())
        with pytest.raises(InsufficientFunds):
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        assert engine.store.next_asset_id == 1

    def test_failed_escrow_leaves_held_record(self) -> None:
        engine, registry, rail = _make_engine()
        registry.frozen.add(1)
        with pytest.raises(CustodyTransferFailed) as exc:
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        assert exc.value.asset_id == 1
        listing = engine.get_listing(1)
        assert listing is not None
        assert listing.state == ListingState.HELD
        assert listing.custodian == "alice"
        assert registry.current_custodian(1) == "alice"
        assert rail.balance("alice") == 1000
        assert engine.store.next_asset_id == 2
        assert engine.get_listed_items() == []

    def test_held_item_can_be_listed_by_minter(self) -> None:
        engine, registry, _ = _make_engine()
        registry.frozen.add(1)
        with pytest.raises(CustodyTransferFailed):
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        registry.frozen.clear()
        listing = engine.relist_item("alice", 1, price=120, fee_paid=FEE)
        assert listing.state == ListingState.LISTED
        assert engine.store.sold_count == 0

    def test_persist_failure_rolls_back_listing(self) -> None:
        def failing_persist() -> None:
            raise OSError("disk full")

        engine, registry, rail = _make_engine(persist=failing_persist)
        with pytest.raises(OSError):
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        assert engine.get_listing(1).state == ListingState.HELD
        assert registry.current_custodian(1) == "alice"
        assert rail.balance("alice") == 1000

    def test_record_persisted_before_custody_moves(self) -> None:
        seen: list[str] = []
        engine, registry, _ = _make_engine()

        def persist() -> None:
            listing = engine.store.listings[1]
            seen.append(f"{listing.state.value}:{registry.current_custodian(1)}")

        engine._persist = persist
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        assert seen == ["listed:alice"]


class TestPurchase:
    def test_purchase_moves_asset_and_funds(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        receipt = engine.purchase("bob", 1, payment=100)

        assert receipt.buyer == "bob"
        assert receipt.seller == "alice"
        assert receipt.fee_disbursed == FEE
        assert receipt.seller_proceeds == 100
        assert registry.current_custodian(1) == "bob"
        assert rail.balance("bob") == 900
        assert rail.balance("alice") == 1000 - FEE + 100
        assert rail.balance("platform") == FEE
        assert rail.escrow_balance() == 0

        listing = engine.get_listing(1)
        assert listing.sold is True
        assert listing.custodian == "bob"
        assert listing.state == ListingState.SOLD
        assert engine.store.sold_count == 1

    def test_payment_mismatch_is_no_op(self) -> None:
        engine, _, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        before = engine.get_listing(1).to_dict()
        for payment in (99, 101, 0):
            with pytest.raises(PaymentMismatch):
                engine.purchase("bob", 1, payment=payment)
        assert engine.get_listing(1).to_dict() == before
        assert rail.balance("bob") == 1000
        assert engine.store.sold_count == 0

    def test_unknown_asset(self) -> None:
        engine, _, _ = _make_engine()
        with pytest.raises(NotListed):
            engine.purchase("bob", 42, payment=100)

    def test_escrow_identity_cannot_buy(self) -> None:
        sellers = ("s1", "s2", "s3", "s4", "s5")
        engine, registry, rail = _make_engine(funded=sellers)
        for seller in sellers:
            engine.create_listing(seller, f"ipfs://{seller}", price=100, fee_paid=FEE)
        with pytest.raises(Unauthorized):
            engine.purchase(MARKETPLACE, 1, payment=100)
        assert rail.escrow_balance() == 5 * FEE
        assert rail.balance("s1") == 1000 - FEE
        assert registry.current_custodian(1) == MARKETPLACE
        assert [l.asset_id for l in engine.get_listed_items()] == [1, 2, 3, 4, 5]

    def test_empty_buyer_rejected(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        with pytest.raises(Unauthorized):
            engine.purchase("", 1, payment=100)
        assert engine.get_listing(1).state == ListingState.LISTED

    def test_rejected_transition_refunds_buyer(self, monkeypatch: pytest.MonkeyPatch) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        monkeypatch.setattr(
            ListingStateMachine, "apply_transition",
            staticmethod(lambda listing, target: ["transition blocked"]),
        )
        with pytest.raises(AlreadySold, match="transition blocked"):
            engine.purchase("bob", 1, payment=100)
        assert rail.balance("bob") == 1000
        assert registry.current_custodian(1) == MARKETPLACE
        assert engine.get_listing(1).state == ListingState.LISTED

    def test_cannot_buy_twice(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        engine.purchase("bob", 1, payment=100)
        with pytest.raises(AlreadySold):
            engine.purchase("carol", 1, payment=100)
        assert engine.store.sold_count == 1

    def test_held_item_not_for_sale(self) -> None:
        engine, registry, _ = _make_engine()
        registry.frozen.add(1)
        with pytest.raises(CustodyTransferFailed):
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        with pytest.raises(NotListed):
            engine.purchase("bob", 1, payment=100)

    def test_unfunded_buyer_rejected(self) -> None:
        engine, _, _ = _make_engine(funded=("alice",))
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        with pytest.raises(InsufficientFunds):
            engine.purchase("bob", 1, payment=100)
        assert engine.get_listing(1).state == ListingState.LISTED

    def test_fee_disbursed_is_the_fee_collected(self) -> None:
        engine, _, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        engine.set_listing_fee("platform", 40)
        receipt = engine.purchase("bob", 1, payment=100)
        assert receipt.fee_disbursed == FEE
        assert rail.balance("platform") == FEE

    def test_free_listing_pays_no_fee(self) -> None:
        engine, _, rail = _make_engine()
        engine.set_listing_fee("platform", 0)
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=0)
        receipt = engine.purchase("bob", 1, payment=100)
        assert receipt.fee_disbursed == 0
        assert rail.balance("platform") == 0
        assert rail.balance("alice") == 1100


class TestPurchaseRollback:
    def _assert_untouched(self, engine, registry, rail) -> None:
        listing = engine.get_listing(1)
        assert listing.state == ListingState.LISTED
        assert listing.sold is False
        assert listing.custodian == MARKETPLACE
        assert registry.current_custodian(1) == MARKETPLACE
        assert rail.balance("bob") == 1000
        assert rail.balance("platform") == 0
        assert rail.balance("alice") == 1000 - FEE
        assert rail.escrow_balance() == FEE
        assert engine.store.sold_count == 0

    def test_seller_refusing_payment_rolls_back(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        rail.refusing.add("alice")
        with pytest.raises(DisbursementFailed):
            engine.purchase("bob", 1, payment=100)
        self._assert_untouched(engine, registry, rail)

    def test_fee_recipient_refusing_rolls_back(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        rail.refusing.add("platform")
        with pytest.raises(DisbursementFailed):
            engine.purchase("bob", 1, payment=100)
        self._assert_untouched(engine, registry, rail)

    def test_custody_release_failure_rolls_back(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        registry.frozen.add(1)
        with pytest.raises(CustodyTransferFailed):
            engine.purchase("bob", 1, payment=100)
        self._assert_untouched(engine, registry, rail)

    def test_rolled_back_item_can_still_be_bought(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        rail.refusing.add("alice")
        with pytest.raises(DisbursementFailed):
            engine.purchase("bob", 1, payment=100)
        rail.refusing.clear()
        receipt = engine.purchase("bob", 1, payment=100)
        assert receipt.buyer == "bob"
        assert engine.store.sold_count == 1


class TestReentrancy:
    def test_reentrant_purchase_rejected(self) -> None:
        engine, _, rail = _make_engine(funded=("alice", "bob", "mallory"))
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        attempts: list[MarketError] = []

        def reenter(to: str, amount: int) -> None:
            try:
                engine.purchase("mallory", 1, payment=100)
            except MarketError as e:
                attempts.append(e)

        rail.on_pay = reenter
        engine.purchase("bob", 1, payment=100)

        assert len(attempts) == 2
        assert all(isinstance(e, AlreadySold) for e in attempts)
        assert rail.balance("mallory") == 1000
        assert engine.store.sold_count == 1

    def test_relist_during_settlement_rejected(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        attempts: list[MarketError] = []

        def relist_as_buyer(to: str, amount: int) -> None:
            try:
                engine.relist_item("bob", 1, price=100, fee_paid=FEE)
            except MarketError as e:
                attempts.append(e)

        rail.on_pay = relist_as_buyer
        rail.refusing.add("alice")
        with pytest.raises(DisbursementFailed):
            engine.purchase("bob", 1, payment=100)

        assert [type(e) for e in attempts] == [AlreadySold]
        assert rail.balance("bob") == 1000
        assert rail.balance("platform") == 0
        assert rail.escrow_balance() == FEE
        assert registry.current_custodian(1) == MARKETPLACE
        listing = engine.get_listing(1)
        assert listing.state == ListingState.LISTED
        assert listing.seller == "alice"

    def test_every_undo_step_runs(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)

        def freeze_asset(to: str, amount: int) -> None:
            registry.frozen.add(1)

        rail.on_pay = freeze_asset
        rail.refusing.add("alice")
        with pytest.raises(RollbackIncomplete) as exc:
            engine.purchase("bob", 1, payment=100)

        assert exc.value.kind == ErrorKind.ROLLBACK_INCOMPLETE
        assert exc.value.asset_id == 1
        assert "frozen" in exc.value.message
        assert rail.balance("bob") == 1000
        assert rail.balance("platform") == 0
        assert engine.store.sold_count == 0

    def test_concurrent_purchases_one_winner(self) -> None:
        buyers = [f"buyer{i}" for i in range(8)]
        engine, registry, _ = _make_engine(funded=("alice", *buyers))
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        barrier = threading.Barrier(len(buyers))
        outcomes: dict[str, object] = {}

        def buy(buyer: str) -> None:
            barrier.wait()
            try:
                outcomes[buyer] = engine.purchase(buyer, 1, payment=100)
            except MarketError as e:
                outcomes[buyer] = e

        threads = [threading.Thread(target=buy, args=(b,)) for b in buyers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [b for b, o in outcomes.items() if not isinstance(o, MarketError)]
        losers = [o for o in outcomes.values() if isinstance(o, MarketError)]
        assert len(winners) == 1
        assert len(losers) == len(buyers) - 1
        assert all(e.kind == ErrorKind.ALREADY_SOLD for e in losers)
        assert engine.store.sold_count == 1
        assert registry.current_custodian(1) == winners[0]


class TestRelist:
    def test_round_trip(self) -> None:
        engine, registry, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        engine.purchase("bob", 1, payment=100)
        listing = engine.relist_item("bob", 1, price=150, fee_paid=FEE)

        assert listing.sold is False
        assert listing.price == 150
        assert listing.seller == "bob"
        assert listing.buyer is None
        assert [l.asset_id for l in engine.get_listed_items()] == [1]
        assert registry.current_custodian(1) == MARKETPLACE
        assert engine.store.sold_count == 0

    def test_resale_pays_new_seller(self) -> None:
        engine, _, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        engine.purchase("bob", 1, payment=100)
        engine.relist_item("bob", 1, price=150, fee_paid=FEE)
        receipt = engine.purchase("carol", 1, payment=150)
        assert receipt.seller == "bob"
        assert rail.balance("bob") == 1000 - 100 - FEE + 150
        assert rail.balance("platform") == 2 * FEE
        assert engine.store.sold_count == 1

    def test_non_owner_rejected(self) -> None:
        engine, _, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        engine.purchase("bob", 1, payment=100)
        before = engine.get_listing(1).to_dict()
        for caller in ("carol", "alice"):
            with pytest.raises(NotOwner):
                engine.relist_item(caller, 1, price=150, fee_paid=FEE)
        assert engine.get_listing(1).to_dict() == before
        assert engine.store.sold_count == 1
        assert rail.balance("carol") == 1000

    def test_listed_item_held_by_marketplace(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        with pytest.raises(NotOwner):
            engine.relist_item("alice", 1, price=150, fee_paid=FEE)

    def test_unknown_asset(self) -> None:
        engine, _, _ = _make_engine()
        with pytest.raises(NotListed):
            engine.relist_item("bob", 7, price=150, fee_paid=FEE)

    def test_escrow_identity_cannot_relist(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        with pytest.raises(Unauthorized):
            engine.relist_item(MARKETPLACE, 1, price=150, fee_paid=FEE)
        assert engine.get_listing(1).seller == "alice"

    def test_price_checked_before_ownership(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        with pytest.raises(InvalidPrice):
            engine.relist_item("carol", 1, price=0, fee_paid=FEE)

    def test_failed_relist_escrow_restores_sale(self) -> None:
        engine, registry, rail = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        engine.purchase("bob", 1, payment=100)
        registry.frozen.add(1)
        with pytest.raises(CustodyTransferFailed):
            engine.relist_item("bob", 1, price=150, fee_paid=FEE)
        listing = engine.get_listing(1)
        assert listing.state == ListingState.SOLD
        assert listing.custodian == "bob"
        assert engine.store.sold_count == 1
        assert rail.balance("bob") == 900


class TestListingFee:
    def test_owner_can_change_fee(self) -> None:
        engine, _, _ = _make_engine()
        previous = engine.set_listing_fee("platform", 40)
        assert previous == FEE
        assert engine.get_listing_fee() == 40

    def test_new_fee_required_on_next_listing(self) -> None:
        engine, _, _ = _make_engine()
        engine.set_listing_fee("platform", 40)
        with pytest.raises(FeeMismatch):
            engine.create_listing("alice", "ipfs://1", price=100, fee_paid=FEE)
        listing = engine.create_listing("alice", "ipfs://1", price=100, fee_paid=40)
        assert listing.fee_paid == 40

    def test_others_unauthorized(self) -> None:
        engine, _, _ = _make_engine()
        with pytest.raises(Unauthorized):
            engine.set_listing_fee("alice", 1)
        assert engine.get_listing_fee() == FEE

    def test_negative_fee_rejected(self) -> None:
        engine, _, _ = _make_engine()
        with pytest.raises(InvalidFee):
            engine.set_listing_fee("platform", -1)

    def test_single_owner_requires_identity(self) -> None:
        with pytest.raises(ValueError):
            SingleOwnerRole("")
        assert SingleOwnerRole("platform").owner_id == "platform"

    def test_role_check_is_injectable(self) -> None:
        class Committee:
            def is_admin(self, caller: str) -> bool:
                return caller in {"ops", "finance"}

        engine = MarketplaceEngine(
            MarketStore.fresh(listing_fee=FEE),
            InMemoryAssetRegistry(),
            InMemoryPaymentRail(),
            Committee(),
            fee_recipient="treasury",
        )
        engine.set_listing_fee("finance", 10)
        assert engine.get_listing_fee() == 10
        with pytest.raises(Unauthorized):
            engine.set_listing_fee("platform", 11)


class TestScenario:
    def test_three_items_one_sale(self) -> None:
        engine, _, rail = _make_engine(funded=("A", "B"))
        for price in (10, 20, 30):
            engine.create_listing("A", f"ipfs://{price}", price=price, fee_paid=FEE)
        assert [l.asset_id for l in engine.get_listed_by("A")] == [1, 2, 3]

        seller_before = rail.balance("A")
        engine.purchase("B", 2, payment=20)

        assert [l.asset_id for l in engine.get_listed_items()] == [1, 3]
        assert [l.asset_id for l in engine.get_owned_items("B")] == [2]
        assert [l.asset_id for l in engine.get_listed_by("A")] == [1, 2, 3]
        assert rail.balance("A") == seller_before + 20
        assert rail.balance("platform") == FEE

    def test_stats(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=10, fee_paid=FEE)
        engine.create_listing("alice", "ipfs://2", price=20, fee_paid=FEE)
        engine.purchase("bob", 1, payment=10)
        assert engine.stats() == {
            "minted_count": 2,
            "sold_count": 1,
            "listed_count": 1,
            "listing_fee": FEE,
            "next_asset_id": 3,
        }

    def test_views_return_copies(self) -> None:
        engine, _, _ = _make_engine()
        engine.create_listing("alice", "ipfs://1", price=10, fee_paid=FEE)
        engine.get_listed_items()[0].price = 999
        engine.get_listing(1).sold = True
        assert engine.get_listing(1).price == 10
        assert engine.get_listing(1).sold is False
