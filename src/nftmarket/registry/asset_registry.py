"""Asset registry abstraction — who holds which asset.

The registry owns asset identities and the current holder of each. The
marketplace engine never changes custody itself: every escrow, release
and rollback goes through ``transfer_custody``. Any registry (an on-chain
token contract, a database-backed service) can be plugged in by
implementing the AssetRegistry Protocol.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from nftmarket.errors import RegistryError
from nftmarket.models.market import BASE_ASSET_ID

logger = logging.getLogger(__name__)


@runtime_checkable
class AssetRegistry(Protocol):
    """Contract for asset registry implementations."""

    def mint(self, owner: str, content_ref: str) -> int:
        """Create a new asset held by ``owner``. Returns its identity."""
        ...

    def transfer_custody(self, asset_id: int, from_party: str, to_party: str) -> None:
        """Move custody. Raises RegistryError if ``from_party`` is not the holder."""
        ...

    def current_custodian(self, asset_id: int) -> str:
        """Current holder. Raises RegistryError for unknown assets."""
        ...

    def content_ref(self, asset_id: int) -> str:
        """Content reference (token URI) supplied at mint time."""
        ...


class InMemoryAssetRegistry:
    """Dict-backed registry with sequential identities.

    Usage:
        registry = InMemoryAssetRegistry()
        asset_id = registry.mint("alice", "ipfs://meta/1")
        registry.transfer_custody(asset_id, "alice", "marketplace")

    Transfers can be made to fail for chosen assets via ``frozen`` so
    rollback paths are testable.
    """

    def __init__(self, next_asset_id: int = BASE_ASSET_ID) -> None:
        self._next_asset_id = next_asset_id
        self._holders: dict[int, str] = {}
        self._content_refs: dict[int, str] = {}
        self.frozen: set[int] = set()

    def mint(self, owner: str, content_ref: str) -> int:
        if not owner:
            raise RegistryError("Cannot mint to an empty owner")
        asset_id = self._next_asset_id
        self._next_asset_id += 1
        self._holders[asset_id] = owner
        self._content_refs[asset_id] = content_ref
        logger.debug("Minted asset %d to %s", asset_id, owner)
        return asset_id

    def transfer_custody(self, asset_id: int, from_party: str, to_party: str) -> None:
        holder = self.current_custodian(asset_id)
        if holder != from_party:
            raise RegistryError(
                f"Asset {asset_id} is held by {holder}, not {from_party}"
            )
        if asset_id in self.frozen:
            raise RegistryError(f"Asset {asset_id} is frozen")
        self._holders[asset_id] = to_party

    def current_custodian(self, asset_id: int) -> str:
        holder = self._holders.get(asset_id)
        if holder is None:
            raise RegistryError(f"Unknown asset: {asset_id}")
        return holder

    def content_ref(self, asset_id: int) -> str:
        if asset_id not in self._content_refs:
            raise RegistryError(f"Unknown asset: {asset_id}")
        return self._content_refs[asset_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_asset_id": self._next_asset_id,
            "holders": {str(k): v for k, v in sorted(self._holders.items())},
            "content_refs": {str(k): v for k, v in sorted(self._content_refs.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryAssetRegistry:
        registry = cls(next_asset_id=int(data["next_asset_id"]))
        registry._holders = {int(k): v for k, v in data.get("holders", {}).items()}
        registry._content_refs = {
            int(k): v for k, v in data.get("content_refs", {}).items()
        }
        return registry
