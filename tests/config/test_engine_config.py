"""
Tests for engine configuration loading.

Covers:
- The shipped default YAML parses to the built-in defaults
- Unknown keys rejected at every level
- Decimal parsing of the tax rate
- Role level overrides merge onto the default table
- Resolution order: explicit path, environment variable, defaults
- Checksum determinism
"""

from decimal import Decimal

import pytest
import yaml

from guarantee_config import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATH,
    EngineConfig,
    get_active_config,
    load_yaml_file,
    parse_engine_config,
)
from guarantee_config.loader import compute_checksum
from guarantee_kernel.domain.dtos import RefundSettings, RefundType
from guarantee_kernel.exceptions import ConfigurationError


class TestDefaultConfigSet:
    """The shipped sets/default.yaml."""

    def test_default_file_matches_builtin_defaults(self):
        config = parse_engine_config(load_yaml_file(DEFAULT_CONFIG_PATH), source="default")
        builtin = EngineConfig()

        assert config.tax_rate == builtin.tax_rate
        assert config.currency == builtin.currency
        assert config.currency_decimal_places == builtin.currency_decimal_places
        assert config.default_refund_settings == builtin.default_refund_settings
        assert dict(config.role_levels) == dict(builtin.role_levels)
        assert config.notifications_enabled is True

    def test_role_levels_are_read_only(self):
        config = EngineConfig()
        with pytest.raises(TypeError):
            config.role_levels["guest"] = 100


class TestParseEngineConfig:
    """parse_engine_config."""

    def test_flat_document(self):
        config = parse_engine_config({"tax_rate": "1.0", "currency": "USD", "currency_decimal_places": 2})
        assert config.tax_rate == Decimal("1.0")
        assert config.currency == "USD"
        assert config.currency_decimal_places == 2

    def test_float_tax_rate_parsed_via_str(self):
        config = parse_engine_config({"tax_rate": 1.1})
        assert config.tax_rate == Decimal("1.1")

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigurationError, match="unknown keys"):
            parse_engine_config({"engine": {"tax": "1.1"}}, source="test.yaml")

    def test_unknown_refund_key(self):
        with pytest.raises(ConfigurationError, match="default_refund_settings"):
            parse_engine_config({"default_refund_settings": {"auto": True}})

    def test_bad_tax_rate(self):
        with pytest.raises(ConfigurationError, match="tax_rate"):
            parse_engine_config({"tax_rate": "ten percent"})

    def test_non_positive_tax_rate(self):
        with pytest.raises(ConfigurationError):
            parse_engine_config({"tax_rate": "0"})

    def test_role_levels_merge(self):
        config = parse_engine_config({"role_levels": {"Agency": 50}})
        assert config.role_levels["agency"] == 50
        assert config.role_levels["operator"] == 90

    def test_role_level_must_be_int(self):
        with pytest.raises(ConfigurationError, match="integer"):
            parse_engine_config({"role_levels": {"agency": "high"}})

    def test_refund_defaults(self):
        config = parse_engine_config(
            {"default_refund_settings": {"type": "delayed", "delay_days": 3}}
        )
        assert config.default_refund_settings.type == RefundType.DELAYED
        assert config.default_refund_settings.delay_days == 3

    def test_quoted_boolean_rejected(self):
        document = yaml.safe_load('default_refund_settings:\n  enabled: "false"\n')
        with pytest.raises(ConfigurationError, match="enabled must be true or false"):
            parse_engine_config(document)

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ConfigurationError):
            parse_engine_config(["tax_rate"])

    def test_checksum_is_deterministic(self):
        a = compute_checksum({"currency": "KRW", "tax_rate": "1.1"})
        b = compute_checksum({"tax_rate": "1.1", "currency": "KRW"})
        assert a == b
        assert a != compute_checksum({"currency": "USD", "tax_rate": "1.1"})


class TestGetActiveConfig:
    """Resolution order."""

    def test_defaults_without_path_or_env(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = get_active_config()
        assert config.default_refund_settings == RefundSettings()

    def test_explicit_path(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump({"engine": {"notifications_enabled": False}}))

        config = get_active_config(path)
        assert config.notifications_enabled is False

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump({"engine": {"currency": "JPY"}}))
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert get_active_config().currency == "JPY"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_load_is_logged(self, captured_logs, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = get_active_config()

        records = [r for r in captured_logs() if r["message"] == "engine_config_loaded"]
        assert records[-1]["source"] == "<defaults>"
        assert records[-1]["checksum"] == config.checksum
