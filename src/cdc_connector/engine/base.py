"""Embedded CDC engine contract.

The engine tails the change log on its own thread and calls the handler
once per change record, one call at a time.  It reads and writes its
working offset through the offset store and keeps schema history in the
history store it is given.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from cdc_connector.history.bridge import SchemaHistoryBridge
from cdc_connector.offsets.bridge import OffsetStorageBridge


class EngineError(Exception):
    """Raised when the engine cannot be built or fails while running."""


@dataclass(slots=True)
class SourceRecord:
    """A raw change record as produced by the engine.

    ``source_partition`` identifies the log partition the record came from
    and ``source_offset`` the position just after it.  Either may be
    ``None`` for records that carry no position (e.g. heartbeats).
    """

    topic: str
    source_partition: dict[str, Any] | None
    source_offset: dict[str, Any] | None
    key: dict[str, Any] | None = None
    value: dict[str, Any] | None = None
    timestamp_ms: int | None = None
    headers: dict[str, str] = field(default_factory=dict)


RecordHandler = Callable[[SourceRecord], None]


@dataclass
class EngineContext:
    """Everything an engine needs to be built."""

    properties: dict[str, Any]
    offset_store: OffsetStorageBridge
    schema_history: SchemaHistoryBridge
    handler: RecordHandler


@runtime_checkable
class Engine(Protocol):
    """Protocol every embedded engine must satisfy."""

    def run(self) -> None:
        """Tail the change log until closed; raise on unrecoverable failure."""
        ...

    def close(self) -> None:
        """Request shutdown.  Safe to call from another thread."""
        ...


EngineFactory = Callable[[EngineContext], Engine]
