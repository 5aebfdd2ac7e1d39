"""Switch engine startup into recovery mode when a position was restored."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from cdc_connector.config.models import SnapshotMode
from cdc_connector.offsets.bridge import OFFSET_KEY_PROPERTY, OFFSET_VALUE_PROPERTY
from cdc_connector.offsets.codec import PositionSerializationError
from cdc_connector.offsets.position import PositionState

logger = structlog.get_logger()

SNAPSHOT_MODE_PROPERTY = "snapshot.mode"


class RecoveryAdapter:
    """Decides once, before the engine is built, how the engine starts.

    With an empty position the properties are returned unchanged and the
    engine performs its configured initial scan.  Otherwise the position
    is injected for the offset store and the engine is forced into
    schema-only recovery so it rebuilds schema without re-emitting rows.
    """

    def __init__(self, state: PositionState) -> None:
        self._state = state

    def apply(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        adapted = dict(properties)
        position = self._state.snapshot()
        if position.is_empty():
            return adapted

        assert position.key is not None
        assert position.value is not None
        try:
            adapted[OFFSET_KEY_PROPERTY] = position.key.decode("utf-8")
            adapted[OFFSET_VALUE_PROPERTY] = position.value.decode("utf-8")
        except UnicodeDecodeError as exc:
            msg = f"Restored position is not UTF-8 text: {position!r}"
            raise PositionSerializationError(msg) from exc
        adapted[SNAPSHOT_MODE_PROPERTY] = SnapshotMode.SCHEMA_ONLY_RECOVERY.value
        logger.info(
            "recovery.enabled",
            previous_snapshot_mode=properties.get(SNAPSHOT_MODE_PROPERTY),
            position=repr(position),
        )
        return adapted
