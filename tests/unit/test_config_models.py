"""Unit tests for connector config models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from cdc_connector.config.models import (
    CheckpointConfig,
    ConnectorConfig,
    SnapshotMode,
    SourceConfig,
    WalReaderConfig,
)


class TestSourceConfig:
    def test_defaults(self):
        cfg = SourceConfig(database="inventory")
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.password.get_secret_value() == "cdc_password"
        assert cfg.snapshot_mode is SnapshotMode.INITIAL

    def test_password_hidden_in_repr(self):
        cfg = SourceConfig(database="inventory", password="hunter2")
        assert "hunter2" not in repr(cfg)

    def test_qualified_tables_accepted(self):
        cfg = SourceConfig(database="db", tables=["public.customers", "sales.orders"])
        assert cfg.tables == ["public.customers", "sales.orders"]

    def test_unqualified_table_rejected(self):
        with pytest.raises(ValidationError, match="schema-qualified"):
            SourceConfig(database="db", tables=["customers"])

    def test_unknown_snapshot_mode_rejected(self):
        with pytest.raises(ValidationError):
            SourceConfig(database="db", snapshot_mode="sometimes")


class TestWalReaderConfig:
    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            WalReaderConfig(batch_size=0)

    def test_zero_retries_allowed(self):
        assert WalReaderConfig(max_retries=0).max_retries == 0


class TestCheckpointConfig:
    def test_defaults(self):
        cfg = CheckpointConfig()
        assert cfg.interval_seconds == 30.0
        assert cfg.retained == 3

    def test_retained_at_least_one(self):
        with pytest.raises(ValidationError):
            CheckpointConfig(retained=0)


class TestConnectorConfig:
    def test_name_pattern(self):
        with pytest.raises(ValidationError):
            ConnectorConfig(name="1bad name", source=SourceConfig(database="db"))

    def test_extra_keys_forbidden(self):
        with pytest.raises(ValidationError):
            ConnectorConfig.model_validate(
                {"name": "inventory", "source": {"database": "db"}, "sink": {}}
            )

    def test_properties_passthrough(self):
        cfg = ConnectorConfig(
            name="inventory",
            source=SourceConfig(database="db"),
            properties={"heartbeat.interval.ms": 1000},
        )
        assert cfg.properties == {"heartbeat.interval.ms": 1000}
