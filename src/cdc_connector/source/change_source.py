"""Checkpointed CDC source task.

Owns one embedded engine, tracks the engine's position in a
:class:`PositionState`, and persists that position plus the schema
history through union list states at every checkpoint.

Threads:
    - the engine thread runs the engine and calls :meth:`_handle_record`
      once per record, one call at a time;
    - the task thread blocks in :meth:`ChangeSource.run`;
    - the runtime's control thread calls :meth:`snapshot` and
      :meth:`cancel` at any time.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import structlog

from cdc_connector.checkpoint.state import (
    CheckpointContext,
    ListState,
    RestoreContext,
)
from cdc_connector.config.defaults import (
    OFFSET_STORAGE_BRIDGE,
    OFFSET_STORAGE_PROPERTY,
    SCHEMA_HISTORY_BRIDGE,
    SCHEMA_HISTORY_PROPERTY,
    merge_engine_defaults,
)
from cdc_connector.engine.base import (
    Engine,
    EngineContext,
    EngineError,
    EngineFactory,
    SourceRecord,
)
from cdc_connector.history.bridge import SchemaHistoryBridge
from cdc_connector.history.ledger import HistoryEntry, HistoryLedger
from cdc_connector.offsets.bridge import OffsetStorageBridge
from cdc_connector.offsets.codec import (
    PositionSerializationError,
    decode_offset_key,
    encode_offset_key,
    encode_offset_value,
)
from cdc_connector.offsets.position import Position, PositionState
from cdc_connector.recovery import RecoveryAdapter
from cdc_connector.source.events import ChangeEvent, convert_record

logger = structlog.get_logger()

OFFSET_STATE_NAME = "cdc-connector-offset"
HISTORY_STATE_NAME = "cdc-connector-history"

STATE_ITEM_TYPES = {
    OFFSET_STATE_NAME: Position,
    HISTORY_STATE_NAME: HistoryEntry,
}


class ConfigurationError(Exception):
    """Raised when the engine properties cannot support recovery."""


class SourceState(StrEnum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    RUNNING = "running"
    CANCELLING = "cancelling"
    STOPPED = "stopped"


@runtime_checkable
class SourceContext(Protocol):
    """Downstream side of the source, provided by the pipeline runtime."""

    def collect_with_timestamp(self, event: ChangeEvent, timestamp_ms: int) -> None:
        """Emit *event* with its event-time timestamp."""
        ...


class ChangeSource:
    """Runs an embedded CDC engine as a checkpointed pipeline source."""

    def __init__(
        self,
        properties: Mapping[str, Any],
        engine_factory: EngineFactory,
        *,
        ledger: HistoryLedger | None = None,
        shutdown_timeout: float | None = 30.0,
    ) -> None:
        namespace = properties.get("name")
        if not namespace:
            msg = "Engine property 'name' is required (it namespaces offsets)"
            raise ConfigurationError(msg)
        self._namespace = str(namespace)
        self._properties = merge_engine_defaults(properties)
        for key, expected in (
            (OFFSET_STORAGE_PROPERTY, OFFSET_STORAGE_BRIDGE),
            (SCHEMA_HISTORY_PROPERTY, SCHEMA_HISTORY_BRIDGE),
        ):
            if self._properties[key] != expected:
                msg = f"'{key}' must be '{expected}', got '{self._properties[key]}'"
                raise ConfigurationError(msg)

        self._engine_factory = engine_factory
        self._shutdown_timeout = shutdown_timeout
        self._position = PositionState()
        self._ledger = ledger if ledger is not None else HistoryLedger()
        self._offset_state: ListState | None = None
        self._history_state: ListState | None = None

        self._state = SourceState.UNINITIALIZED
        self._state_lock = threading.Lock()
        # Held for the whole of each record callback
        self._callback_lock = threading.Lock()
        self._engine: Engine | None = None
        self._engine_thread: threading.Thread | None = None
        self._offset_store: OffsetStorageBridge | None = None
        self._context: SourceContext | None = None
        self._failure: BaseException | None = None

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def position(self) -> PositionState:
        return self._position

    @property
    def ledger(self) -> HistoryLedger:
        return self._ledger

    @property
    def state(self) -> SourceState:
        with self._state_lock:
            return self._state

    # -- Checkpointed-source contract ------------------------------------------

    def initialize(self, context: RestoreContext) -> None:
        """Bind the checkpointed lists and fold in restored state."""
        store = context.state_store
        self._offset_state = store.get_union_list_state(OFFSET_STATE_NAME)
        self._history_state = store.get_union_list_state(HISTORY_STATE_NAME)
        with self._state_lock:
            if self._state is SourceState.UNINITIALIZED:
                self._state = SourceState.STARTING

        if not context.is_restored:
            return

        for position in self._offset_state.get():
            if not self._owns(position):
                continue
            self._position.update(position.key, position.value)

        restored = self._history_state.get()
        entries = self._owned_history(restored)
        if entries:
            self._ledger.replace_all(entries)

        logger.info(
            "change_source.restored",
            namespace=self._namespace,
            position=repr(self._position.snapshot()),
            history_entries=len(entries),
            history_dropped=len(restored) - len(entries),
        )

    def run(self, context: SourceContext) -> None:
        """Start the engine and block until it stops or is cancelled."""
        with self._state_lock:
            if self._state in (SourceState.CANCELLING, SourceState.STOPPED):
                logger.info("change_source.cancelled_before_start")
                return
            if self._state is SourceState.UNINITIALIZED:
                msg = "initialize() must be called before run()"
                raise RuntimeError(msg)
        self._context = context

        properties = RecoveryAdapter(self._position).apply(self._properties)
        offset_store = OffsetStorageBridge(self._position, self._namespace)
        engine_context = EngineContext(
            properties=properties,
            offset_store=offset_store,
            schema_history=SchemaHistoryBridge(self._ledger, self._namespace),
            handler=self._handle_record,
        )
        try:
            engine = self._engine_factory(engine_context)
        except EngineError:
            raise
        except Exception as exc:
            msg = f"Failed to build engine for '{self._namespace}': {exc}"
            raise EngineError(msg) from exc

        errors: list[BaseException] = []

        def _run_engine() -> None:
            try:
                engine.run()
            except BaseException as exc:  # re-raised on the task thread
                errors.append(exc)

        thread = threading.Thread(
            target=_run_engine, name=f"cdc-engine-{self._namespace}", daemon=True
        )
        with self._state_lock:
            if self._state is not SourceState.STARTING:
                logger.info("change_source.cancelled_before_start")
                return
            self._engine = engine
            self._engine_thread = thread
            self._offset_store = offset_store
            self._state = SourceState.RUNNING
            thread.start()

        logger.info(
            "change_source.started",
            namespace=self._namespace,
            snapshot_mode=properties.get("snapshot.mode"),
        )
        try:
            thread.join()
        finally:
            with self._state_lock:
                self._state = SourceState.STOPPED

        if self._failure is not None:
            raise self._failure
        if errors:
            raise errors[0]
        logger.info("change_source.finished", namespace=self._namespace)

    def snapshot(self, context: CheckpointContext) -> None:
        """Write the current position and history into the checkpoint lists."""
        if self._offset_state is None or self._history_state is None:
            msg = "initialize() must be called before snapshot()"
            raise RuntimeError(msg)

        # Position first, ledger second: every schema change the engine
        # recorded before reaching this position is already in the ledger.
        position = self._position.snapshot()
        if position.is_empty():
            logger.debug(
                "change_source.snapshot_skipped",
                checkpoint_id=context.checkpoint_id,
            )
            return

        entries = self._ledger.all()
        self._offset_state.update([position])
        self._history_state.update(entries)
        logger.debug(
            "change_source.snapshot",
            checkpoint_id=context.checkpoint_id,
            position=repr(position),
            history_entries=len(entries),
        )

    def cancel(self) -> None:
        """Stop the engine; waits for an in-flight record callback to finish."""
        # Fencing inside the callback lock: a record dropped as late never
        # has its offset committed afterwards.
        with self._callback_lock:
            with self._state_lock:
                if self._state in (
                    SourceState.UNINITIALIZED,
                    SourceState.CANCELLING,
                    SourceState.STOPPED,
                ):
                    return
                if self._engine is None:
                    # Initialized but never started: make a later run() a no-op
                    self._state = SourceState.STOPPED
                    return
                self._state = SourceState.CANCELLING
                engine = self._engine
                thread = self._engine_thread
                offset_store = self._offset_store

            if offset_store is not None:
                offset_store.fence()
            try:
                engine.close()
            except Exception:
                logger.exception("change_source.engine_close_failed", namespace=self._namespace)

        if thread is not None and thread is not threading.current_thread():
            thread.join(self._shutdown_timeout)
            if thread.is_alive():
                logger.warning(
                    "change_source.engine_still_running",
                    namespace=self._namespace,
                    timeout_seconds=self._shutdown_timeout,
                )

        with self._state_lock:
            self._state = SourceState.STOPPED
        logger.info("change_source.cancelled", namespace=self._namespace)

    # -- Engine callback -------------------------------------------------------

    def _handle_record(self, record: SourceRecord) -> None:
        with self._callback_lock:
            with self._state_lock:
                if self._state is not SourceState.RUNNING:
                    return
            try:
                self._update_position(record)
            except PositionSerializationError as exc:
                self._fail(exc)
                raise

            event = convert_record(record)
            if not event.supported:
                logger.debug("change_source.record_skipped", topic=record.topic)
                return
            assert self._context is not None
            self._context.collect_with_timestamp(event, event.ts_ms)

    def _update_position(self, record: SourceRecord) -> None:
        if record.source_partition is None or record.source_offset is None:
            return
        key = encode_offset_key(self._namespace, record.source_partition)
        value = encode_offset_value(record.source_offset)
        self._position.update(key, value)

    def _fail(self, exc: BaseException) -> None:
        """Record a fatal callback error and stop the engine."""
        logger.error(
            "change_source.position_failed",
            namespace=self._namespace,
            error=str(exc),
        )
        if self._failure is None:
            self._failure = exc
        if self._offset_store is not None:
            self._offset_store.fence()
        if self._engine is not None:
            try:
                self._engine.close()
            except Exception:
                logger.exception("change_source.engine_close_failed")

    def _owns(self, position: Position) -> bool:
        """Whether a restored (possibly foreign) position belongs to this source."""
        if position.is_empty():
            return False
        assert position.key is not None
        try:
            namespace, _ = decode_offset_key(position.key)
        except PositionSerializationError:
            logger.warning("change_source.unreadable_position", position=repr(position))
            return False
        return namespace == self._namespace

    def _owned_history(self, entries: list[HistoryEntry]) -> list[HistoryEntry]:
        """This source's restored entries, first occurrence of each kept in order.

        The union-merged history list holds a copy from every instance that
        wrote the checkpoint, including instances of other sources.
        """
        owned: list[HistoryEntry] = []
        seen: set[str] = set()
        for entry in entries:
            if entry.namespace != self._namespace:
                continue
            identity = json.dumps(entry.to_dict(), sort_keys=True, default=str)
            if identity in seen:
                continue
            seen.add(identity)
            owned.append(entry)
        return owned
