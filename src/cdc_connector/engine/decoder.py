"""pgoutput binary protocol decoder.

Decodes the pgoutput logical replication plugin wire format into
structured WalChange dataclasses.  Handles message types:

- B (Begin): transaction start
- C (Commit): transaction commit
- R (Relation): table schema definition
- I (Insert): row insert
- U (Update): row update
- D (Delete): row delete

Relation messages are also reported to an optional callback so the
engine can record them as schema history, and previously recorded
relations can be seeded back with :meth:`PgOutputDecoder.seed`.

Reference: https://www.postgresql.org/docs/current/protocol-logicalrep-message-formats.html
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

# PostgreSQL epoch: 2000-01-01 00:00:00 UTC
_PG_EPOCH = datetime(2000, 1, 1, tzinfo=UTC)
_PG_EPOCH_TS = _PG_EPOCH.timestamp()


@dataclass(slots=True)
class WalChange:
    """A single decoded WAL change event."""

    operation: Literal["insert", "update", "delete"]
    schema: str
    table: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    lsn: int
    xid: int
    timestamp: datetime


@dataclass
class RelationInfo:
    """Relation (table) metadata from a Relation message."""

    rel_id: int
    schema: str
    table: str
    columns: list[tuple[str, int]] = field(default_factory=list)  # (name, type_oid)

    def to_table_change(self) -> dict[str, Any]:
        return {
            "type": "ALTER",
            "id": f"{self.schema}.{self.table}",
            "rel_id": self.rel_id,
            "columns": [{"name": n, "type_oid": oid} for n, oid in self.columns],
        }

    @classmethod
    def from_table_change(cls, change: dict[str, Any]) -> RelationInfo:
        schema, _, table = change["id"].partition(".")
        return cls(
            rel_id=int(change["rel_id"]),
            schema=schema,
            table=table,
            columns=[(c["name"], int(c["type_oid"])) for c in change.get("columns", [])],
        )


class PgOutputDecoder:
    """Stateful decoder for the pgoutput binary wire protocol.

    Maintains a relation cache so that Insert/Update/Delete messages
    can resolve column names from the most recent Relation message.
    """

    def __init__(
        self, on_relation: Callable[[RelationInfo], None] | None = None
    ) -> None:
        self._relations: dict[int, RelationInfo] = {}
        self._on_relation = on_relation
        self._current_lsn: int = 0
        self._current_xid: int = 0
        self._current_timestamp: datetime = _PG_EPOCH

    def seed(self, relation: RelationInfo) -> None:
        """Load a relation known from history without reporting it again."""
        self._relations[relation.rel_id] = relation

    def decode(self, data: bytes) -> list[WalChange]:
        """Decode a pgoutput message, returning zero or more WalChange events.

        Relation/Begin/Commit messages return an empty list (metadata only).
        Insert/Update/Delete messages return a single WalChange.
        """
        if not data:
            return []

        msg_type = chr(data[0])
        payload = data[1:]

        if msg_type == "B":
            self._decode_begin(payload)
            return []
        elif msg_type == "C":
            return []
        elif msg_type == "R":
            self._decode_relation(payload)
            return []
        elif msg_type == "I":
            return [self._decode_insert(payload)]
        elif msg_type == "U":
            return [self._decode_update(payload)]
        elif msg_type == "D":
            return [self._decode_delete(payload)]
        else:
            return []

    def _decode_begin(self, data: bytes) -> None:
        """Parse Begin message: final LSN (8) + commit timestamp (8) + xid (4)."""
        lsn = struct.unpack_from("!Q", data, 0)[0]
        ts_us = struct.unpack_from("!q", data, 8)[0]
        self._current_lsn = lsn
        self._current_xid = struct.unpack_from("!I", data, 16)[0]
        self._current_timestamp = datetime.fromtimestamp(
            _PG_EPOCH_TS + ts_us / 1_000_000, tz=UTC
        )

    def _decode_relation(self, data: bytes) -> None:
        """Parse Relation message: rel_id + namespace + name + columns."""
        offset = 0
        rel_id = struct.unpack_from("!I", data, offset)[0]
        offset += 4

        namespace, offset = self._read_string(data, offset)
        table, offset = self._read_string(data, offset)

        # replica identity (1 byte)
        offset += 1

        n_cols = struct.unpack_from("!H", data, offset)[0]
        offset += 2

        columns: list[tuple[str, int]] = []
        for _ in range(n_cols):
            # flags (1 byte)
            offset += 1
            col_name, offset = self._read_string(data, offset)
            type_oid = struct.unpack_from("!I", data, offset)[0]
            offset += 4
            # type modifier (4 bytes)
            offset += 4
            columns.append((col_name, type_oid))

        relation = RelationInfo(
            rel_id=rel_id, schema=namespace, table=table, columns=columns
        )
        if self._relations.get(rel_id) == relation:
            return
        self._relations[rel_id] = relation
        if self._on_relation is not None:
            self._on_relation(relation)

    def _change(
        self,
        operation: Literal["insert", "update", "delete"],
        rel: RelationInfo,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> WalChange:
        return WalChange(
            operation=operation,
            schema=rel.schema,
            table=rel.table,
            before=before,
            after=after,
            lsn=self._current_lsn,
            xid=self._current_xid,
            timestamp=self._current_timestamp,
        )

    def _decode_insert(self, data: bytes) -> WalChange:
        """Parse Insert message: rel_id (4) + 'N' + TupleData."""
        rel_id = struct.unpack_from("!I", data, 0)[0]
        rel = self._relations[rel_id]
        # Skip rel_id (4) + 'N' marker (1)
        row = self._decode_tuple_data(data, 5, rel.columns)
        return self._change("insert", rel, None, row)

    def _decode_update(self, data: bytes) -> WalChange:
        """Parse Update message: rel_id (4) + optional old tuple + 'N' + new tuple."""
        rel_id = struct.unpack_from("!I", data, 0)[0]
        rel = self._relations[rel_id]
        offset = 4

        before = None
        marker = chr(data[offset])

        # Old tuple present if marker is 'K' (key) or 'O' (old)
        if marker in ("K", "O"):
            offset += 1
            before, offset = self._decode_tuple_data_with_offset(
                data, offset, rel.columns
            )
        offset += 1  # skip 'N'

        after = self._decode_tuple_data(data, offset, rel.columns)
        return self._change("update", rel, before, after)

    def _decode_delete(self, data: bytes) -> WalChange:
        """Parse Delete message: rel_id (4) + 'K'|'O' + TupleData."""
        rel_id = struct.unpack_from("!I", data, 0)[0]
        rel = self._relations[rel_id]
        # Skip rel_id (4) + key/old marker (1)
        before = self._decode_tuple_data(data, 5, rel.columns)
        return self._change("delete", rel, before, None)

    def _decode_tuple_data(
        self, data: bytes, start: int, columns: list[tuple[str, int]]
    ) -> dict[str, Any]:
        result, _ = self._decode_tuple_data_with_offset(data, start, columns)
        return result

    def _decode_tuple_data_with_offset(
        self, data: bytes, start: int, columns: list[tuple[str, int]]
    ) -> tuple[dict[str, Any], int]:
        """Decode TupleData, returning (dict, new_offset)."""
        offset = start
        n_cols = struct.unpack_from("!H", data, offset)[0]
        offset += 2

        row: dict[str, Any] = {}
        for i in range(n_cols):
            col_type = chr(data[offset])
            offset += 1

            col_name = columns[i][0] if i < len(columns) else f"col_{i}"

            if col_type == "t":
                val_len = struct.unpack_from("!I", data, offset)[0]
                offset += 4
                row[col_name] = data[offset : offset + val_len].decode("utf-8")
                offset += val_len
            else:
                # 'n' NULL, 'u' unchanged TOAST
                row[col_name] = None

        return row, offset

    @staticmethod
    def _read_string(data: bytes, offset: int) -> tuple[str, int]:
        """Read a null-terminated string from *data* at *offset*."""
        end = data.index(0, offset)
        s = data[offset:end].decode("utf-8")
        return s, end + 1
