"""Conversion of raw engine records into downstream change events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from cdc_connector.engine.base import SourceRecord


class Operation(StrEnum):
    CREATE = "c"
    UPDATE = "u"
    DELETE = "d"
    READ = "r"


@dataclass(slots=True)
class ChangeEvent:
    """A row-level change ready for the pipeline.

    ``supported`` is false for records the pipeline does not forward:
    tombstones, schema-change records and unknown operations.
    """

    topic: str
    op: Operation | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    source: dict[str, Any]
    ts_ms: int
    supported: bool

    @property
    def table(self) -> str | None:
        schema = self.source.get("schema")
        table = self.source.get("table")
        if table is None:
            return None
        return f"{schema}.{table}" if schema else table

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "op": self.op.value if self.op else None,
            "before": self.before,
            "after": self.after,
            "source": self.source,
            "ts_ms": self.ts_ms,
        }


def _timestamp(record: SourceRecord, value: dict[str, Any]) -> int:
    for candidate in (value.get("ts_ms"), (value.get("source") or {}).get("ts_ms")):
        if isinstance(candidate, int | float):
            return int(candidate)
    if record.timestamp_ms is not None:
        return record.timestamp_ms
    return 0


def convert_record(record: SourceRecord) -> ChangeEvent:
    """Build a :class:`ChangeEvent` from a Debezium-style record envelope."""
    value = record.value
    if value is None:
        return ChangeEvent(
            topic=record.topic,
            op=None,
            before=None,
            after=None,
            source={},
            ts_ms=record.timestamp_ms or 0,
            supported=False,
        )

    try:
        op: Operation | None = Operation(value.get("op"))
    except ValueError:
        op = None

    return ChangeEvent(
        topic=record.topic,
        op=op,
        before=value.get("before"),
        after=value.get("after"),
        source=dict(value.get("source") or {}),
        ts_ms=_timestamp(record, value),
        supported=op is not None and "tableChanges" not in value,
    )
