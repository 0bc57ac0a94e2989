"""Marketplace error taxonomy.

Every failure surfaced by the engine carries a stable ``ErrorKind`` and a
human-readable reason. Validation errors are raised before any state is
touched; errors raised from inside an atomic sequence are raised only
after the sequence has been rolled back.
"""

from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    """Stable classification of marketplace failures."""
    INVALID_PRICE = "invalid_price"
    INVALID_FEE = "invalid_fee"
    FEE_MISMATCH = "fee_mismatch"
    PAYMENT_MISMATCH = "payment_mismatch"
    NOT_OWNER = "not_owner"
    UNAUTHORIZED = "unauthorized"
    ALREADY_SOLD = "already_sold"
    ALREADY_LISTED = "already_listed"
    NOT_LISTED = "not_listed"
    CUSTODY_TRANSFER_FAILED = "custody_transfer_failed"
    DISBURSEMENT_FAILED = "disbursement_failed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ROLLBACK_INCOMPLETE = "rollback_incomplete"
    PERSISTENCE_FAILED = "persistence_failed"


class MarketError(Exception):
    """Base class for all marketplace operation failures."""

    kind: ErrorKind

    def __init__(self, message: str, asset_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.asset_id = asset_id

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class InvalidPrice(MarketError):
    kind = ErrorKind.INVALID_PRICE


class InvalidFee(MarketError):
    kind = ErrorKind.INVALID_FEE


class FeeMismatch(MarketError):
    kind = ErrorKind.FEE_MISMATCH


class PaymentMismatch(MarketError):
    kind = ErrorKind.PAYMENT_MISMATCH


class NotOwner(MarketError):
    kind = ErrorKind.NOT_OWNER


class Unauthorized(MarketError):
    kind = ErrorKind.UNAUTHORIZED


class AlreadySold(MarketError):
    kind = ErrorKind.ALREADY_SOLD


class AlreadyListed(MarketError):
    kind = ErrorKind.ALREADY_LISTED


class NotListed(MarketError):
    kind = ErrorKind.NOT_LISTED


class CustodyTransferFailed(MarketError):
    kind = ErrorKind.CUSTODY_TRANSFER_FAILED


class DisbursementFailed(MarketError):
    kind = ErrorKind.DISBURSEMENT_FAILED


class InsufficientFunds(MarketError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class RollbackIncomplete(MarketError):
    """A failed purchase whose compensating steps did not all succeed.

    Every step is still attempted; the message lists the ones that failed.
    """
    kind = ErrorKind.ROLLBACK_INCOMPLETE


class RegistryError(Exception):
    """Raised by an asset registry when it rejects a mint or transfer."""


class PaymentError(Exception):
    """Raised by a payment rail when a transfer cannot be completed."""


class InsufficientBalanceError(PaymentError):
    """Raised when a payer's balance cannot cover a collection."""
