"""Unit tests for reading connector config files."""

from __future__ import annotations

from pathlib import Path

import pytest

from cdc_connector.config.loader import expand_env, load_connector_config, read_config_file

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "examples" / "connector.yaml"


class TestExpandEnv:
    def test_plain_string_unchanged(self):
        assert expand_env("inventory") == "inventory"

    def test_substitutes_env_var(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PG_HOST", "db.prod")
        assert expand_env("${PG_HOST}") == "db.prod"

    def test_fallback_when_var_missing(self):
        assert expand_env("${MISSING_VAR:-localhost}") == "localhost"

    def test_env_var_overrides_fallback(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PG_PORT", "6543")
        assert expand_env("${PG_PORT:-5432}") == "6543"

    def test_empty_fallback(self):
        assert expand_env("${MISSING_VAR:-}") == ""

    def test_escaped_brace_in_fallback(self):
        assert expand_env("${MISSING_VAR:-{a\\}}") == "{a}"

    def test_reference_inside_text(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CDC_ROOT", "/var/lib")
        assert expand_env("${CDC_ROOT}/checkpoints") == "/var/lib/checkpoints"

    def test_missing_var_without_fallback_raises(self):
        with pytest.raises(ValueError, match="UNDEFINED_VAR"):
            expand_env("${UNDEFINED_VAR}")

    def test_nested_structures(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DB_PASS", "secret123")
        data = {"password": "${DB_PASS}", "tables": ["${MISSING:-public.t}"], "port": 5432}
        assert expand_env(data) == {
            "password": "secret123",
            "tables": ["public.t"],
            "port": 5432,
        }


class TestReadConfigFile:
    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="No connector config"):
            read_config_file(tmp_path / "nope.yaml")

    def test_invalid_yaml_reports_line(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ValueError, match=r"not valid YAML \(line \d+"):
            read_config_file(path)

    def test_non_mapping_raises(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(TypeError, match="mapping"):
            read_config_file(path)

    def test_empty_file_is_empty_mapping(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert read_config_file(path) == {}


class TestLoadConnectorConfig:
    def test_example_config(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("PG_HOST", raising=False)
        monkeypatch.setenv("CHECKPOINT_DIR", "/var/lib/cdc")
        config = load_connector_config(EXAMPLE_CONFIG)

        assert config.name == "inventory"
        assert config.source.host == "localhost"
        assert config.source.tables == ["public.customers", "public.orders"]
        assert str(config.checkpoint.directory) == "/var/lib/cdc"
        assert config.properties == {"include.schema.changes": False}

    def test_invalid_config_wrapped(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: inventory\nsource:\n  database: db\n  tables: [customers]\n")
        with pytest.raises(ValueError, match="failed validation"):
            load_connector_config(path)

    def test_unknown_top_level_key_rejected(self, tmp_path: Path):
        path = tmp_path / "extra.yaml"
        path.write_text("name: inventory\nsource:\n  database: db\nkafka: {}\n")
        with pytest.raises(ValueError, match="kafka"):
            load_connector_config(path)
