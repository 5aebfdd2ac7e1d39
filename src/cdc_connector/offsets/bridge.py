"""Engine offset store backed by the in-memory :class:`PositionState`.

The engine reads and writes its working offset through this store.  No
file or external service is touched; durability comes from the
checkpoint snapshot of the same :class:`PositionState`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from cdc_connector.offsets.codec import (
    PositionSerializationError,
    decode_offset_key,
    decode_offset_value,
    encode_offset_key,
    encode_offset_value,
)
from cdc_connector.offsets.position import PositionState

logger = structlog.get_logger()

OFFSET_KEY_PROPERTY = "offset.storage.position.key"
OFFSET_VALUE_PROPERTY = "offset.storage.position.value"


class OffsetStorageBridge:
    """Redirects engine offset reads/writes to a :class:`PositionState`."""

    def __init__(self, state: PositionState, namespace: str) -> None:
        self._state = state
        self._namespace = namespace
        self._running = False
        self._fenced = False

    def configure(self, properties: Mapping[str, Any]) -> None:
        """Seed the position from recovery properties, when present."""
        key = properties.get(OFFSET_KEY_PROPERTY)
        value = properties.get(OFFSET_VALUE_PROPERTY)
        if key is None or value is None:
            return
        self._state.update(str(key).encode("utf-8"), str(value).encode("utf-8"))
        logger.info("offset_store.seeded", namespace=self._namespace, key=str(key))

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def fence(self) -> None:
        """Refuse every later write, so the position stops at the last delivered record."""
        self._fenced = True

    @property
    def fenced(self) -> bool:
        return self._fenced

    # -- Raw byte interface ----------------------------------------------------

    def get(self, keys: Iterable[bytes]) -> dict[bytes, bytes]:
        """Return the stored value for every requested key that matches."""
        position = self._state.snapshot()
        if position.is_empty():
            return {}
        assert position.key is not None
        assert position.value is not None
        return {
            key: position.value
            for key in keys
            if _same_partition(key, position.key)
        }

    def set(self, values: Mapping[bytes, bytes]) -> None:
        """Store offsets; the last entry wins since one position is tracked."""
        if self._fenced:
            logger.debug("offset_store.write_ignored", namespace=self._namespace)
            return
        if len(values) > 1:
            logger.warning(
                "offset_store.multiple_partitions",
                namespace=self._namespace,
                count=len(values),
            )
        for key, value in values.items():
            self._state.update(key, value)

    # -- Engine convenience ----------------------------------------------------

    def offset(self, source_partition: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return the decoded stored offset for *source_partition*, if any."""
        key = encode_offset_key(self._namespace, source_partition)
        found = self.get([key]).get(key)
        if found is None:
            return None
        return decode_offset_value(found)

    def commit(
        self, source_partition: Mapping[str, Any], source_offset: Mapping[str, Any]
    ) -> None:
        """Encode and store the offset reached for *source_partition*."""
        self.set(
            {
                encode_offset_key(self._namespace, source_partition): (
                    encode_offset_value(source_offset)
                )
            }
        )


def _same_partition(requested: bytes, stored: bytes) -> bool:
    if requested == stored:
        return True
    try:
        return decode_offset_key(requested) == decode_offset_key(stored)
    except PositionSerializationError:
        return False
