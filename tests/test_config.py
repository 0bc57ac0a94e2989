"""Tests for marketplace configuration — defaults, file and environment."""

import json
from pathlib import Path

import pytest

from nftmarket.config import MarketConfig
from nftmarket.models.market import MARKETPLACE

ENV_KEYS = (
    "NFTMARKET_OWNER_ID", "NFTMARKET_FEE_RECIPIENT", "NFTMARKET_LISTING_FEE",
    "NFTMARKET_BASE_ASSET_ID", "NFTMARKET_DATA_DIR", "NFTMARKET_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv then delenv registers each key for removal at teardown, so
    # values loaded from a .env file do not leak into other tests.
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


class TestDefaults:
    def test_defaults(self) -> None:
        config = MarketConfig()
        assert config.owner_id == "platform"
        assert config.listing_fee == 25
        assert config.base_asset_id == 1
        assert config.data_dir == Path("data")

    def test_negative_fee_rejected(self) -> None:
        with pytest.raises(ValueError):
            MarketConfig(listing_fee=-1)

    def test_empty_owner_rejected(self) -> None:
        with pytest.raises(ValueError):
            MarketConfig(owner_id="")

    def test_escrow_identity_rejected_as_owner(self) -> None:
        with pytest.raises(ValueError, match="escrow identity"):
            MarketConfig(owner_id=MARKETPLACE)

    def test_escrow_identity_rejected_as_fee_recipient(self) -> None:
        with pytest.raises(ValueError, match="escrow identity"):
            MarketConfig(fee_recipient=MARKETPLACE)


class TestConfigFile:
    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "market.json"
        path.write_text(json.dumps({"listing_fee": 10, "owner_id": "ops"}))
        config = MarketConfig.from_config_file(path)
        assert config.listing_fee == 10
        assert config.owner_id == "ops"
        assert config.fee_recipient == "platform"

    def test_unknown_key_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "market.json"
        path.write_text(json.dumps({"listing_fees": 10}))
        with pytest.raises(ValueError, match="Unknown config keys"):
            MarketConfig.from_config_file(path)


class TestEnvironment:
    def test_env_overrides_base(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NFTMARKET_LISTING_FEE", "40")
        monkeypatch.setenv("NFTMARKET_DATA_DIR", str(tmp_path))
        base = MarketConfig(owner_id="ops")
        config = MarketConfig.from_env(dotenv_path=tmp_path / "missing.env", base=base)
        assert config.listing_fee == 40
        assert config.data_dir == tmp_path
        assert config.owner_id == "ops"

    def test_dotenv_file(self, tmp_path: Path) -> None:
        env = tmp_path / ".env"
        env.write_text("NFTMARKET_FEE_RECIPIENT=treasury\nNFTMARKET_BASE_ASSET_ID=100\n")
        config = MarketConfig.from_env(dotenv_path=env)
        assert config.fee_recipient == "treasury"
        assert config.base_asset_id == 100

    def test_process_env_wins_over_dotenv(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        env = tmp_path / ".env"
        env.write_text("NFTMARKET_OWNER_ID=fromfile\n")
        monkeypatch.setenv("NFTMARKET_OWNER_ID", "fromenv")
        assert MarketConfig.from_env(dotenv_path=env).owner_id == "fromenv"

    def test_invalid_env_value(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NFTMARKET_LISTING_FEE", "-5")
        with pytest.raises(ValueError):
            MarketConfig.from_env(dotenv_path=tmp_path / "missing.env")
