"""Engine schema-history store backed by a :class:`HistoryLedger`."""

from __future__ import annotations

import dataclasses

import structlog

from cdc_connector.history.ledger import HistoryEntry, HistoryLedger

logger = structlog.get_logger()


class SchemaHistoryBridge:
    """Records engine schema changes into the source's own ledger.

    Each ChangeSource passes its ledger here, so sources in one process
    never share history.  Entries are tagged with the source namespace so
    a restore can tell them apart from other sources' entries in the same
    union-merged checkpoint.
    """

    def __init__(self, ledger: HistoryLedger, namespace: str) -> None:
        self._ledger = ledger
        self._namespace = namespace

    def record(self, entry: HistoryEntry) -> None:
        if entry.namespace is None:
            entry = dataclasses.replace(entry, namespace=self._namespace)
        self._ledger.append(entry)
        logger.debug(
            "schema_history.recorded",
            namespace=entry.namespace,
            database=entry.database,
            tables=len(entry.table_changes),
        )

    def recover(self) -> list[HistoryEntry]:
        """Return stored entries in the order they were recorded."""
        return self._ledger.all()

    def exists(self) -> bool:
        return len(self._ledger) > 0
