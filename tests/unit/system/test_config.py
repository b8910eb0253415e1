"""Unit tests for system/config.py - engine configuration."""

import pytest
from pydantic import ValidationError

from lotledger.system import EngineConfig, LoggingConfig


class TestEngineConfig:
    """Test EngineConfig model."""

    def test_defaults(self):
        """Test EngineConfig uses correct defaults."""
        config = EngineConfig()

        assert config.cost_precision == 8
        assert config.cost_precision_by_asset == {}
        assert config.oversell_policy == "reject"
        assert config.lot_method == "fifo"
        assert config.verify_replay is True
        assert config.allow_partial is False
        assert isinstance(config.logging, LoggingConfig)

    def test_precision_for_asset_override(self):
        """Per-asset precision wins over the default."""
        config = EngineConfig(cost_precision=2, cost_precision_by_asset={"BTC": 8})

        assert config.precision_for("BTC") == 8
        assert config.precision_for("VNM") == 2

    def test_partial_policy(self):
        """Partial oversell policy enables partial matching."""
        assert EngineConfig(oversell_policy="partial").allow_partial is True

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValidationError):
            EngineConfig(oversell_policy="short")  # type: ignore[arg-type]

    def test_only_fifo_supported(self):
        """Other lot methods are rejected."""
        with pytest.raises(ValidationError, match="fifo"):
            EngineConfig(lot_method="lifo")

    @pytest.mark.parametrize("digits", [-1, 29])
    def test_precision_range(self, digits):
        with pytest.raises(ValidationError):
            EngineConfig(cost_precision=digits)

    def test_precision_by_asset_range(self):
        with pytest.raises(ValidationError, match="BTC"):
            EngineConfig(cost_precision_by_asset={"BTC": 40})

    def test_frozen(self):
        """Config is immutable after creation."""
        config = EngineConfig()
        with pytest.raises(ValidationError):
            config.cost_precision = 2  # type: ignore[misc]


class TestFromYaml:
    """Test loading configuration from YAML."""

    def test_load_engine_section(self, tmp_path):
        """Values come from the 'engine' section."""
        path = tmp_path / "engine.yaml"
        path.write_text(
            """
engine:
  cost_precision: 4
  cost_precision_by_asset:
    BTC: 8
  oversell_policy: partial
  logging:
    level: DEBUG
    format: json
"""
        )

        config = EngineConfig.from_yaml(path)

        assert config.cost_precision == 4
        assert config.precision_for("BTC") == 8
        assert config.oversell_policy == "partial"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"

    def test_missing_section_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = EngineConfig.from_yaml(path)

        assert config == EngineConfig()
