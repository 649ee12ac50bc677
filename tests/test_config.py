"""Tests for txnflow.config: YAML configuration loader."""

from decimal import Decimal

import pytest

from txnflow.config import Config
from tests.conftest import FIXTURE_CONFIG_DIR


class TestConfigInit:
    def test_loads_from_config_dir(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.config_dir == FIXTURE_CONFIG_DIR

    def test_raises_on_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config("/nonexistent/path")

    def test_raises_on_file_not_directory(self, tmp_path):
        f = tmp_path / "not_a_dir.yaml"
        f.write_text("test: true")
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config(f)


class TestConfigSettings:
    def test_fixture_values(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.chunk_size == 2
        assert config.page_size == 3
        assert config.unusual_amount_threshold == Decimal("500")

    def test_csv_columns_override(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.csv_columns == {
            "date": ["Posted"],
            "description": ["Payee"],
            "amount": ["Value"],
        }

    def test_defaults_when_sections_absent(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("other: 1\n")
        config = Config(tmp_path)
        assert config.chunk_size == 1000
        assert config.page_size == 1000
        assert config.unusual_amount_threshold == Decimal("1000")
        assert config.csv_columns == {}

    def test_single_alias_string_becomes_list(self, tmp_path):
        (tmp_path / "settings.yaml").write_text(
            "csv:\n  columns:\n    amount: Debit\n"
        )
        assert Config(tmp_path).csv_columns == {"amount": ["Debit"]}

    def test_threshold_keeps_decimal_precision(self, tmp_path):
        (tmp_path / "settings.yaml").write_text(
            "ingest:\n  unusual_amount_threshold: 999.99\n"
        )
        assert Config(tmp_path).unusual_amount_threshold == Decimal("999.99")

    @pytest.mark.parametrize("value", ["0", "-5", "ten", "true"])
    def test_invalid_chunk_size(self, tmp_path, value):
        (tmp_path / "settings.yaml").write_text(f"ingest:\n  chunk_size: {value}\n")
        with pytest.raises(ValueError, match="chunk_size"):
            Config(tmp_path).chunk_size

    def test_invalid_threshold(self, tmp_path):
        (tmp_path / "settings.yaml").write_text(
            "ingest:\n  unusual_amount_threshold: lots\n"
        )
        with pytest.raises(ValueError, match="unusual_amount_threshold"):
            Config(tmp_path).unusual_amount_threshold

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="settings.yaml"):
            Config(tmp_path).settings

    def test_empty_file(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("")
        with pytest.raises(ValueError, match="Empty config file"):
            Config(tmp_path).settings

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("ingest: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            Config(tmp_path).settings

    def test_settings_must_be_mapping(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            Config(tmp_path).settings


class TestConfigRules:
    def test_loads_seed_rules_in_order(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert [r["name"] for r in config.rules] == ["Coffee", "Rent", "Big spend"]

    def test_seed_rules_have_required_fields(self):
        config = Config(FIXTURE_CONFIG_DIR)
        for rule in config.rules:
            assert {"condition_type", "condition_value"} <= rule.keys()

    def test_inactive_flag_preserved(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.rules[2]["active"] is False

    def test_bare_list_accepted(self, tmp_path):
        (tmp_path / "rules.yaml").write_text(
            "- condition_type: AMOUNT_EQUALS\n  condition_value: '5'\n"
        )
        assert len(Config(tmp_path).rules) == 1
