"""Payment rail abstraction — how funds enter and leave escrow.

The engine never moves money itself. Incoming funds (listing fees,
purchase payments) are collected into the marketplace escrow account;
outgoing funds (fee to the platform, proceeds to the seller) are paid
from it. Every completed transfer returns an id that can be reversed,
which is how the engine compensates partial work when an atomic
purchase fails midway.

A rail must fail loudly: a recipient that cannot accept funds raises
PaymentError, never returns quietly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from nftmarket.errors import InsufficientBalanceError, PaymentError
from nftmarket.models.market import MARKETPLACE

logger = logging.getLogger(__name__)


@runtime_checkable
class PaymentRail(Protocol):
    """Contract for payment rail implementations."""

    def collect(self, payer: str, amount: int) -> str:
        """Move ``amount`` from ``payer`` into escrow. Returns a transfer id."""
        ...

    def pay(self, to: str, amount: int) -> str:
        """Move ``amount`` from escrow to ``to``. Returns a transfer id."""
        ...

    def reverse(self, transfer_id: str) -> None:
        """Undo a completed transfer."""
        ...

    def escrow_balance(self) -> int:
        """Funds currently held by the marketplace."""
        ...


@dataclass
class Transfer:
    """A single completed movement of funds."""
    transfer_id: str
    payer: str
    payee: str
    amount: int
    reversed: bool = False


class InMemoryPaymentRail:
    """Balance-sheet rail used by tests and the CLI.

    Usage:
        rail = InMemoryPaymentRail()
        rail.deposit("bob", 100)
        tid = rail.collect("bob", 100)
        rail.pay("alice", 100)

    ``refusing`` names recipients whose payouts fail. ``on_pay`` is
    invoked with (recipient, amount) before a payout is credited, which
    lets tests model a recipient that calls back into the marketplace.
    """

    def __init__(self, escrow_account: str = MARKETPLACE) -> None:
        self._escrow = escrow_account
        self._balances: dict[str, int] = {}
        self._transfers: dict[str, Transfer] = {}
        self._counter = 0
        self.refusing: set[str] = set()
        self.on_pay: Optional[Callable[[str, int], None]] = None

    def deposit(self, party: str, amount: int) -> None:
        """Credit external funds to a party."""
        if amount < 0:
            raise ValueError("Deposit amount must be non-negative")
        self._balances[party] = self._balances.get(party, 0) + amount

    def balance(self, party: str) -> int:
        return self._balances.get(party, 0)

    def escrow_balance(self) -> int:
        return self.balance(self._escrow)

    def collect(self, payer: str, amount: int) -> str:
        if amount < 0:
            raise PaymentError("Collection amount must be non-negative")
        if self.balance(payer) < amount:
            raise InsufficientBalanceError(
                f"{payer} has {self.balance(payer)}, needs {amount}"
            )
        return self._move(payer, self._escrow, amount)

    def pay(self, to: str, amount: int) -> str:
        if amount < 0:
            raise PaymentError("Payout amount must be non-negative")
        if to in self.refusing:
            raise PaymentError(f"Recipient {to} refused {amount}")
        if self.escrow_balance() < amount:
            raise PaymentError(
                f"Escrow holds {self.escrow_balance()}, cannot pay {amount}"
            )
        if self.on_pay is not None:
            self.on_pay(to, amount)
        return self._move(self._escrow, to, amount)

    def reverse(self, transfer_id: str) -> None:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            raise PaymentError(f"Unknown transfer: {transfer_id}")
        if transfer.reversed:
            raise PaymentError(f"Transfer already reversed: {transfer_id}")
        self._balances[transfer.payee] = self.balance(transfer.payee) - transfer.amount
        self._balances[transfer.payer] = self.balance(transfer.payer) + transfer.amount
        transfer.reversed = True
        logger.debug("Reversed %s (%d %s→%s)", transfer_id, transfer.amount,
                     transfer.payer, transfer.payee)

    def transfers(self) -> list[Transfer]:
        return list(self._transfers.values())

    def _move(self, payer: str, payee: str, amount: int) -> str:
        self._counter += 1
        transfer_id = f"TX-{self._counter:08d}"
        self._balances[payer] = self.balance(payer) - amount
        self._balances[payee] = self.balance(payee) + amount
        self._transfers[transfer_id] = Transfer(transfer_id, payer, payee, amount)
        return transfer_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "escrow_account": self._escrow,
            "counter": self._counter,
            "balances": dict(sorted(self._balances.items())),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryPaymentRail:
        rail = cls(escrow_account=data.get("escrow_account", MARKETPLACE))
        rail._counter = int(data.get("counter", 0))
        rail._balances = {k: int(v) for k, v in data.get("balances", {}).items()}
        return rail
