"""Tests for license_shop.config module."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from license_shop.config import CatalogConfig, PlanConfig, ShopConfig, load_config


class TestShopConfig:
    """Test ShopConfig model parsing and validation."""

    def test_minimal_config(self):
        """Token and owner are enough; every other section has defaults."""
        cfg = ShopConfig(telegram={"token": "123:abc", "owner_id": 42})
        assert cfg.telegram.owner_id == 42
        assert cfg.database.path == "shop.db"
        assert cfg.currency.plural == "Coins"
        assert cfg.display.timezone == "Asia/Yangon"
        assert cfg.sweep.reminder_window_hours == 24
        assert cfg.redemption.fixed_plan is None

    def test_full_config(self, sample_config_dict: dict):
        """Full config dict should parse correctly."""
        cfg = ShopConfig(**sample_config_dict)
        assert cfg.currency.price_unit == "ks"
        assert list(cfg.payments.methods) == ["WavePay", "KBZPay"]
        assert len(cfg.catalog.plans) == 3
        assert cfg.metrics.enabled is False

    def test_default_catalog(self):
        """The built-in catalog carries the four purchasable plans."""
        cfg = ShopConfig()
        plans = cfg.catalog.purchase_plans()
        assert [p.name for p in plans] == ["1Month", "3Months", "6Months", "12Months"]
        assert plans[0].days == 28 and plans[0].coins == 2 and plans[0].price == 17000

    def test_message_templates_overridable(self):
        """A single template can be overridden without touching the rest."""
        cfg = ShopConfig(messages={"welcome": "Hi {name}"})
        assert cfg.messages.welcome == "Hi {name}"
        assert "{plural}" in cfg.messages.balance


class TestCatalogConfig:
    """Plan list validation and lookups."""

    def test_duplicate_plan_names_rejected(self):
        with pytest.raises(PydanticValidationError):
            CatalogConfig(plans=[
                {"name": "A", "days": 1, "coins": 1, "price": 1},
                {"name": "A", "days": 2, "coins": 2, "price": 2},
            ])

    def test_colon_in_plan_name_rejected(self):
        """Plan names travel inside button payloads."""
        with pytest.raises(PydanticValidationError):
            CatalogConfig(plans=[{"name": "a:b", "days": 1, "coins": 1}])

    def test_non_positive_values_rejected(self):
        with pytest.raises(PydanticValidationError):
            PlanConfig(name="Zero", days=0, coins=1)
        with pytest.raises(PydanticValidationError):
            PlanConfig(name="Free", days=1, coins=0)

    def test_redeem_only_plan(self, sample_config: ShopConfig):
        """A plan without a price is offered for redemption but not purchase."""
        assert "Trial" not in [p.name for p in sample_config.catalog.purchase_plans()]
        assert "Trial" in [p.name for p in sample_config.catalog.redeem_plans()]
        assert sample_config.catalog.get_plan("Trial").purchasable is False

    def test_get_unknown_plan(self, sample_config: ShopConfig):
        assert sample_config.catalog.get_plan("Lifetime") is None


class TestLoadConfig:
    """Test YAML config loading."""

    def test_load_from_file(self, tmp_path: Path, sample_config_dict: dict):
        """Load config from a YAML file."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.dump(sample_config_dict), encoding="utf-8")
        cfg = load_config(str(config_file))
        assert cfg.telegram.token == "123:test"
        assert cfg.catalog.get_plan("3Months").coins == 6

    def test_file_not_found(self):
        """Missing file should raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/path/config.yaml")

    def test_non_mapping_rejected(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(str(config_file))

    def test_env_var_expansion(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """${VAR} and ${VAR:-default} are expanded from the environment."""
        monkeypatch.setenv("SHOP_TEST_TOKEN", "999:secret")
        monkeypatch.delenv("SHOP_TEST_DB", raising=False)
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            'telegram:\n  token: "${SHOP_TEST_TOKEN}"\n  owner_id: 7\n'
            'database:\n  path: "${SHOP_TEST_DB:-fallback.db}"\n',
            encoding="utf-8",
        )
        cfg = load_config(str(config_file))
        assert cfg.telegram.token == "999:secret"
        assert cfg.database.path == "fallback.db"

    def test_example_config_is_valid(self, monkeypatch: pytest.MonkeyPatch):
        """The shipped example config validates."""
        monkeypatch.setenv("SHOP_BOT_TOKEN", "1:x")
        example = Path(__file__).resolve().parent.parent / "config.example.yaml"
        cfg = load_config(str(example))
        assert cfg.telegram.token == "1:x"
        assert cfg.payments.contact_handle == "@shop_support"
