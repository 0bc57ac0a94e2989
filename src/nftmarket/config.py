"""Marketplace configuration.

Values come from, in order of precedence:
    1. NFTMARKET_* environment variables (a .env file is loaded first),
    2. a JSON config file,
    3. the defaults below.

    NFTMARKET_OWNER_ID        privileged identity allowed to change the fee
    NFTMARKET_FEE_RECIPIENT   receives the listing fee when an item sells
    NFTMARKET_LISTING_FEE     initial flat listing fee (smallest unit)
    NFTMARKET_BASE_ASSET_ID   first asset identity issued
    NFTMARKET_DATA_DIR        directory for state.json and events.jsonl
    NFTMARKET_LOG_LEVEL       logging level for the CLI
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from nftmarket.models.market import BASE_ASSET_ID, MARKETPLACE

DEFAULT_LISTING_FEE = 25
DEFAULT_DATA_DIR = Path("data")


@dataclass(frozen=True)
class MarketConfig:
    """Static settings fixed at marketplace start-up."""

    owner_id: str = "platform"
    fee_recipient: str = "platform"
    listing_fee: int = DEFAULT_LISTING_FEE
    base_asset_id: int = BASE_ASSET_ID
    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        for name in ("owner_id", "fee_recipient"):
            value = getattr(self, name)
            if not value:
                raise ValueError(f"{name} must be non-empty")
            if value == MARKETPLACE:
                raise ValueError(f"{name} may not be the escrow identity {MARKETPLACE!r}")
        if self.listing_fee < 0:
            raise ValueError(f"listing_fee must be non-negative, got {self.listing_fee}")
        if self.base_asset_id < 0:
            raise ValueError(f"base_asset_id must be non-negative, got {self.base_asset_id}")

    @classmethod
    def from_config_file(cls, path: Path) -> MarketConfig:
        """Load from a JSON object whose keys match the field names."""
        params: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
        return cls()._merged(params)

    @classmethod
    def from_env(
        cls,
        dotenv_path: Optional[Path] = None,
        base: Optional[MarketConfig] = None,
    ) -> MarketConfig:
        """Overlay NFTMARKET_* variables on ``base`` (or the defaults)."""
        load_dotenv(dotenv_path)
        params: dict[str, Any] = {}
        for name in ("owner_id", "fee_recipient", "listing_fee",
                     "base_asset_id", "data_dir", "log_level"):
            value = os.getenv(f"NFTMARKET_{name.upper()}")
            if value is not None and value != "":
                params[name] = value
        return (base or cls())._merged(params)

    def _merged(self, params: dict[str, Any]) -> MarketConfig:
        unknown = set(params) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        coerced: dict[str, Any] = {}
        for key, value in params.items():
            if key in ("listing_fee", "base_asset_id"):
                coerced[key] = int(value)
            elif key == "data_dir":
                coerced[key] = Path(value)
            else:
                coerced[key] = str(value)
        return replace(self, **coerced)
