"""nftmarket — escrow-backed marketplace for non-fungible assets."""

__version__ = "0.1.0"
