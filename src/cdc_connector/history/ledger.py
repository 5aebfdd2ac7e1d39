"""Ordered schema-change history accumulated since start or restore."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """A schema change the engine needs to interpret later log entries.

    The content is engine-defined; the ledger only keeps it in order.
    """

    source: dict[str, Any]
    position: dict[str, Any]
    database: str | None = None
    ddl: str | None = None
    table_changes: list[dict[str, Any]] = field(default_factory=list)
    # Name of the source that recorded the change
    namespace: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "position": self.position,
            "database": self.database,
            "ddl": self.ddl,
            "table_changes": self.table_changes,
            "namespace": self.namespace,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            source=dict(data.get("source") or {}),
            position=dict(data.get("position") or {}),
            database=data.get("database"),
            ddl=data.get("ddl"),
            table_changes=list(data.get("table_changes") or []),
            namespace=data.get("namespace"),
        )


class HistoryLedger:
    """Append-only list of :class:`HistoryEntry`, replaced only on restore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[HistoryEntry] = []

    def append(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def all(self) -> list[HistoryEntry]:
        """Return a copy of every entry in arrival order."""
        with self._lock:
            return list(self._entries)

    def replace_all(self, entries: Iterable[HistoryEntry]) -> None:
        new_entries = list(entries)
        with self._lock:
            self._entries = new_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
