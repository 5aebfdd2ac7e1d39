"""PostgreSQL logical replication engine.

Tails the WAL through a pgoutput slot, optionally scans the captured
tables first, and hands every change to the registered handler as a
:class:`SourceRecord`.  Offsets are read from and flushed to the offset
store; Relation messages are kept as schema history.

Lifecycle:
    1. Ensure publication + slot exist (via SlotManager)
    2. Look up the stored offset for partition ``{"server": <name>}``
    3. Initial table scan, unless an offset exists or the mode skips it
    4. Stream pgoutput messages, decode, call the handler per change
    5. After each batch, flush the offset and confirm the LSN

On connection loss, reconnects with exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from cdc_connector.config.models import SnapshotMode
from cdc_connector.engine.base import EngineContext, EngineError, SourceRecord
from cdc_connector.engine.decoder import PgOutputDecoder, RelationInfo, WalChange
from cdc_connector.engine.slot_manager import SlotManager, format_lsn
from cdc_connector.history.ledger import HistoryEntry

logger = structlog.get_logger()

_OPS = {"insert": "c", "update": "u", "delete": "d"}

# Modes that never re-read table contents
_NO_SCAN_MODES = {
    SnapshotMode.NEVER,
    SnapshotMode.NO_DATA,
    SnapshotMode.SCHEMA_ONLY,
    SnapshotMode.SCHEMA_ONLY_RECOVERY,
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, OSError):
        return True
    import psycopg

    return isinstance(exc, psycopg.OperationalError)


class WalEngine:
    """Embedded engine reading PostgreSQL WAL via logical replication."""

    def __init__(self, context: EngineContext) -> None:
        props = context.properties
        try:
            self._name: str = props["name"]
            self._database: str = props["database.dbname"]
            self._snapshot_mode = SnapshotMode(props.get("snapshot.mode", "initial"))
            self._batch_size = int(props.get("wal.batch.size", 100))
            self._batch_timeout = float(props.get("wal.batch.timeout.seconds", 1.0))
            self._max_retries = int(props.get("wal.max.retries", 0))
            self._backoff_max = float(props.get("wal.backoff.max.seconds", 60.0))
        except (KeyError, ValueError) as exc:
            msg = f"Invalid engine properties: {exc}"
            raise EngineError(msg) from exc

        self._properties = props
        self._offsets = context.offset_store
        self._history = context.schema_history
        self._handler = context.handler
        self._tables = [
            t for t in str(props.get("table.include.list", "")).split(",") if t
        ]
        self._include_schema_changes = _as_bool(props.get("include.schema.changes"))
        self._partition = {"server": self._name}
        self._slot_name: str = props.get("slot.name", "cdc_slot")
        self._publication_name: str = props.get("publication.name", "cdc_publication")
        self._dsn = (
            f"host={props.get('database.hostname', 'localhost')} "
            f"port={props.get('database.port', '5432')} "
            f"dbname={self._database} user={props.get('database.user', '')} "
            f"password={props.get('database.password', '')}"
        )
        self._slot_manager = SlotManager(
            dsn=self._dsn,
            slot_name=self._slot_name,
            publication_name=self._publication_name,
        )
        self._running = False
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self._sleep = asyncio.sleep
        self._last_offset: dict[str, Any] | None = None

    # -- Engine protocol -------------------------------------------------------

    def run(self) -> None:
        """Run until :meth:`close` is called; blocks the calling thread."""
        self._offsets.configure(self._properties)
        self._offsets.start()
        try:
            asyncio.run(self._run_async())
        except asyncio.CancelledError:
            if self._running:
                raise
        finally:
            self._offsets.stop()
            logger.info("wal_engine.stopped", name=self._name)

    def close(self) -> None:
        self._closed = True
        self._running = False
        loop, task = self._loop, self._task
        if loop is None or task is None:
            return
        # Unblocks a stream that is waiting for the next message
        with suppress(RuntimeError):
            loop.call_soon_threadsafe(task.cancel)

    # -- Main loop -------------------------------------------------------------

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.current_task()
        if self._closed:
            return
        self._running = True
        await self._slot_manager.ensure(self._tables)

        stored = self._offsets.offset(self._partition)
        start_lsn = int(stored.get("lsn", 0)) if stored else 0
        self._last_offset = stored
        logger.info(
            "wal_engine.starting",
            name=self._name,
            slot=self._slot_name,
            snapshot_mode=self._snapshot_mode.value,
            start_lsn=format_lsn(start_lsn),
        )

        if stored is None and self._snapshot_mode not in _NO_SCAN_MODES:
            await self._scan_tables()

        retrying = AsyncRetrying(
            retry=retry_if_exception(lambda exc: self._running and _is_transient(exc)),
            stop=(
                stop_after_attempt(self._max_retries)
                if self._max_retries > 0
                else stop_never
            ),
            wait=wait_exponential(multiplier=1, max=self._backoff_max),
            sleep=self._sleep,
            before_sleep=self._log_reconnect,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._stream_changes(start_lsn)
        except Exception:
            if self._running:
                raise
            logger.debug("wal_engine.error_after_close", exc_info=True)

    @staticmethod
    def _log_reconnect(retry_state: RetryCallState) -> None:
        logger.warning(
            "wal_engine.connection_lost",
            attempt=retry_state.attempt_number,
            backoff_seconds=(
                retry_state.next_action.sleep if retry_state.next_action else None
            ),
        )

    def _new_decoder(self) -> PgOutputDecoder:
        decoder = PgOutputDecoder(on_relation=self._record_relation)
        for entry in self._history.recover():
            for change in entry.table_changes:
                decoder.seed(RelationInfo.from_table_change(change))
        return decoder

    async def _stream_changes(self, start_lsn: int) -> None:
        """Open a replication connection and stream WAL changes."""
        import psycopg

        decoder = self._new_decoder()
        conn = await psycopg.AsyncConnection.connect(self._dsn, autocommit=True)
        try:
            cursor = conn.cursor()
            if self._last_offset and "lsn" in self._last_offset:
                start_lsn = max(start_lsn, int(self._last_offset["lsn"]))
            await cursor.execute(
                f"START_REPLICATION SLOT {self._slot_name} LOGICAL "
                f"{format_lsn(start_lsn)} "
                f"(proto_version '1', publication_names '{self._publication_name}')"
            )

            pending = 0
            loop = asyncio.get_running_loop()
            last_flush = loop.time()

            async for msg in cursor:
                if not self._running:
                    break

                data = msg.payload if hasattr(msg, "payload") else bytes(msg)
                if isinstance(data, memoryview):
                    data = bytes(data)

                for change in decoder.decode(data):
                    self._emit_change(change)
                    pending += 1

                now = loop.time()
                if pending and (
                    pending >= self._batch_size
                    or (now - last_flush) >= self._batch_timeout
                ):
                    self._flush(cursor)
                    pending = 0
                    last_flush = now

            if pending:
                self._flush(cursor)
        finally:
            await conn.close()

    def _flush(self, cursor: Any) -> None:
        """Store the last offset and confirm its LSN to PostgreSQL."""
        if self._last_offset is None:
            return
        if self._offsets.fenced:
            # Records after the fence were never delivered, so nothing is confirmed
            logger.debug("wal_engine.flush_skipped", name=self._name)
            return
        self._offsets.commit(self._partition, self._last_offset)
        lsn = int(self._last_offset.get("lsn", 0))
        if lsn > 0 and hasattr(cursor, "send_feedback"):
            cursor.send_feedback(flush_lsn=lsn)
        logger.debug("wal_engine.flushed", lsn=format_lsn(lsn))

    # -- Record building -------------------------------------------------------

    def _emit_change(self, change: WalChange) -> None:
        ts_ms = int(change.timestamp.timestamp() * 1000)
        offset = {
            "lsn": change.lsn,
            "txId": change.xid,
            "ts_usec": int(change.timestamp.timestamp() * 1_000_000),
        }
        source = {
            "connector": "postgresql",
            "name": self._name,
            "db": self._database,
            "schema": change.schema,
            "table": change.table,
            "lsn": change.lsn,
            "txId": change.xid,
            "ts_ms": ts_ms,
        }
        self._last_offset = offset
        self._handler(
            SourceRecord(
                topic=f"{self._name}.{change.schema}.{change.table}",
                source_partition=dict(self._partition),
                source_offset=offset,
                key=change.after or change.before,
                value={
                    "op": _OPS[change.operation],
                    "before": change.before,
                    "after": change.after,
                    "source": source,
                    "ts_ms": int(time.time() * 1000),
                },
                timestamp_ms=ts_ms,
            )
        )

    def _record_relation(self, relation: RelationInfo) -> None:
        position = dict(self._last_offset or {})
        table_change = relation.to_table_change()
        self._history.record(
            HistoryEntry(
                source=dict(self._partition),
                position=position,
                database=self._database,
                table_changes=[table_change],
            )
        )
        if not self._include_schema_changes:
            return
        self._handler(
            SourceRecord(
                topic=self._name,
                source_partition=dict(self._partition),
                source_offset=position or None,
                key={"databaseName": self._database},
                value={
                    "source": {"name": self._name, "db": self._database},
                    "databaseName": self._database,
                    "tableChanges": [table_change],
                    "ts_ms": int(time.time() * 1000),
                },
            )
        )

    async def _scan_tables(self) -> None:
        """Emit a read record for every row of every captured table."""
        import psycopg
        from psycopg.rows import dict_row

        snapshot_lsn = await self._slot_manager.current_lsn()
        offset = {"lsn": snapshot_lsn, "snapshot": True}
        logger.info(
            "wal_engine.snapshot_started",
            tables=self._tables,
            lsn=format_lsn(snapshot_lsn),
        )
        rows = 0
        async with await psycopg.AsyncConnection.connect(
            self._dsn, row_factory=dict_row
        ) as conn:
            for table in self._tables:
                schema, _, name = table.partition(".")
                cursor = await conn.execute(f"SELECT * FROM {table}")  # noqa: S608
                async for row in cursor:
                    if not self._running:
                        return
                    now_ms = int(time.time() * 1000)
                    self._last_offset = offset
                    self._handler(
                        SourceRecord(
                            topic=f"{self._name}.{schema}.{name}",
                            source_partition=dict(self._partition),
                            source_offset=dict(offset),
                            key=row,
                            value={
                                "op": "r",
                                "before": None,
                                "after": row,
                                "source": {
                                    "connector": "postgresql",
                                    "name": self._name,
                                    "db": self._database,
                                    "schema": schema,
                                    "table": name,
                                    "snapshot": True,
                                    "ts_ms": now_ms,
                                },
                                "ts_ms": now_ms,
                            },
                            timestamp_ms=now_ms,
                        )
                    )
                    rows += 1
        self._offsets.commit(self._partition, {"lsn": snapshot_lsn})
        self._last_offset = {"lsn": snapshot_lsn}
        logger.info("wal_engine.snapshot_completed", rows=rows)
