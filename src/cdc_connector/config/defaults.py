"""Default config loading and merging utilities."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from cdc_connector.config.models import ConnectorConfig

DEFAULTS_DIR = Path(__file__).parent / "defaults"

OFFSET_STORAGE_PROPERTY = "offset.storage"
SCHEMA_HISTORY_PROPERTY = "schema.history.internal"

OFFSET_STORAGE_BRIDGE = "cdc_connector.offsets.bridge.OffsetStorageBridge"
SCHEMA_HISTORY_BRIDGE = "cdc_connector.history.bridge.SchemaHistoryBridge"

ENGINE_DEFAULTS: dict[str, Any] = {
    OFFSET_STORAGE_PROPERTY: OFFSET_STORAGE_BRIDGE,
    SCHEMA_HISTORY_PROPERTY: SCHEMA_HISTORY_BRIDGE,
    "include.schema.changes": False,
    "timezone.transfer.enabled": True,
    "snapshot.locking.mode": "none",
}


def load_defaults(name: str = "connector") -> dict[str, Any]:
    """Load a YAML defaults file by name from the defaults directory."""
    path = DEFAULTS_DIR / f"{name}.yaml"
    if not path.exists():
        msg = f"Defaults file '{name}' not found at {path}"
        raise FileNotFoundError(msg)
    with path.open() as f:
        return yaml.safe_load(f) or {}  # type: ignore[no-any-return]


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively deep-merge *overrides* into *base* (non-mutating)."""
    merged: dict[str, Any] = {**base}
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_engine_defaults(properties: Mapping[str, Any]) -> dict[str, Any]:
    """Return *properties* with engine defaults filled in where absent."""
    merged = dict(properties)
    for key, value in ENGINE_DEFAULTS.items():
        merged.setdefault(key, value)
    return merged


def build_connector_config(
    overrides: dict[str, Any],
    *,
    defaults: str = "connector",
) -> ConnectorConfig:
    """Build a validated ConnectorConfig by merging defaults with overrides."""
    base = load_defaults(defaults)
    merged = merge_configs(base, overrides)
    return ConnectorConfig.model_validate(merged)
