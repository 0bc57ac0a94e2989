"""Asset registry — identities and custody of non-fungible assets."""

from nftmarket.registry.asset_registry import AssetRegistry, InMemoryAssetRegistry

__all__ = ["AssetRegistry", "InMemoryAssetRegistry"]
