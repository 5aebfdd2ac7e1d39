"""Build engine startup properties from the connector config."""

from __future__ import annotations

from typing import Any

from cdc_connector.config.defaults import merge_engine_defaults
from cdc_connector.config.models import ConnectorConfig


def build_engine_properties(config: ConnectorConfig) -> dict[str, Any]:
    """Return the flat engine property map for *config*.

    Explicit ``config.properties`` override derived values, and engine
    defaults fill whatever is still missing.
    """
    src = config.source
    wal = config.wal_reader
    derived: dict[str, Any] = {
        "name": config.name,
        "database.hostname": src.host,
        "database.port": str(src.port),
        "database.user": src.username,
        "database.password": src.password.get_secret_value(),
        "database.dbname": src.database,
        "table.include.list": ",".join(src.tables),
        "snapshot.mode": src.snapshot_mode.value,
        "plugin.name": "pgoutput",
        "slot.name": wal.slot_name,
        "publication.name": wal.publication_name,
        "wal.batch.size": wal.batch_size,
        "wal.batch.timeout.seconds": wal.batch_timeout_seconds,
        "wal.max.retries": wal.max_retries,
        "wal.backoff.max.seconds": wal.backoff_max_seconds,
    }
    return merge_engine_defaults({**derived, **config.properties})
