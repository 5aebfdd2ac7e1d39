"""Pydantic configuration models for the CDC source connector."""

from __future__ import annotations

import re
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, SecretStr, field_validator


class SnapshotMode(StrEnum):
    """Engine initial-scan modes."""

    INITIAL = "initial"
    NEVER = "never"
    WHEN_NEEDED = "when_needed"
    NO_DATA = "no_data"
    SCHEMA_ONLY = "schema_only"
    SCHEMA_ONLY_RECOVERY = "schema_only_recovery"


class SourceConfig(BaseModel):
    """Connection settings for the captured PostgreSQL database."""

    host: str = "localhost"
    port: int = 5432
    database: str
    username: str = "cdc_user"
    password: SecretStr = SecretStr("cdc_password")
    # Schema-qualified table names (e.g. "public.customers").
    tables: list[str] = Field(default_factory=list)
    snapshot_mode: SnapshotMode = SnapshotMode.INITIAL

    @field_validator("tables")
    @classmethod
    def validate_qualified_names(cls, v: list[str]) -> list[str]:
        """Validate that table names are schema-qualified."""
        pattern = re.compile(r"^[a-zA-Z_]\w*\.[a-zA-Z_]\w*$")
        for table in v:
            if not pattern.match(table):
                msg = (
                    f"Table '{table}' must be schema-qualified "
                    f"(e.g. 'public.customers')"
                )
                raise ValueError(msg)
        return v


class WalReaderConfig(BaseModel):
    """Logical replication settings for the WAL engine."""

    publication_name: str = "cdc_publication"
    slot_name: str = "cdc_slot"
    batch_size: int = Field(default=100, ge=1)
    batch_timeout_seconds: float = Field(default=1.0, gt=0)
    # 0 retries forever
    max_retries: int = Field(default=0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, gt=0)


class CheckpointConfig(BaseModel):
    """Local checkpoint storage used by the standalone runtime."""

    directory: Path = Path("checkpoints")
    interval_seconds: float = Field(default=30.0, gt=0)
    retained: int = Field(default=3, ge=1)
    instance_id: str = Field(default="0", min_length=1)


ConnectorName = Annotated[str, Field(pattern=r"^[a-zA-Z][a-zA-Z0-9._-]*$")]


class ConnectorConfig(BaseModel, extra="forbid"):
    """Top-level connector configuration.

    ``name`` is the offset namespace; changing it orphans stored positions.
    ``properties`` are passed to the engine verbatim and win over the
    values derived from ``source`` and ``wal_reader``.
    """

    name: ConnectorName
    source: SourceConfig
    wal_reader: WalReaderConfig = WalReaderConfig()
    checkpoint: CheckpointConfig = CheckpointConfig()
    properties: dict[str, Any] = Field(default_factory=dict)
