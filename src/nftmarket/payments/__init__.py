"""Payments — escrow collection, disbursement, and reversal."""

from nftmarket.payments.payment_rail import InMemoryPaymentRail, PaymentRail, Transfer

__all__ = ["InMemoryPaymentRail", "PaymentRail", "Transfer"]
