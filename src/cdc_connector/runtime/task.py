"""Standalone runtime: drives one ChangeSource with periodic local checkpoints."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import structlog

from cdc_connector.checkpoint.state import (
    CheckpointContext,
    OperatorStateStore,
    RestoreContext,
)
from cdc_connector.checkpoint.storage import FileCheckpointStorage
from cdc_connector.config.models import ConnectorConfig
from cdc_connector.engine.base import EngineFactory
from cdc_connector.engine.properties import build_engine_properties
from cdc_connector.source.change_source import (
    STATE_ITEM_TYPES,
    ChangeSource,
    SourceContext,
)
from cdc_connector.source.events import ChangeEvent

logger = structlog.get_logger()

EventSink = Callable[[ChangeEvent, int], None]


class CollectingContext:
    """SourceContext that forwards to *sink*, or buffers when none is given."""

    def __init__(self, sink: EventSink | None = None) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self.events: list[tuple[ChangeEvent, int]] = []
        self.emitted = 0

    def collect_with_timestamp(self, event: ChangeEvent, timestamp_ms: int) -> None:
        with self._lock:
            self.emitted += 1
            if self._sink is None:
                self.events.append((event, timestamp_ms))
                return
        self._sink(event, timestamp_ms)


class SourceTask:
    """Restores, runs and checkpoints a :class:`ChangeSource`.

    The source runs on a worker thread; this object's :meth:`run` acts as
    the control thread, taking a checkpoint every
    ``checkpoint.interval_seconds`` until :meth:`stop` is called.
    """

    def __init__(
        self,
        config: ConnectorConfig,
        engine_factory: EngineFactory,
        context: SourceContext,
        *,
        storage: FileCheckpointStorage | None = None,
    ) -> None:
        self._config = config
        self._context = context
        self._storage = storage or FileCheckpointStorage(
            config.checkpoint.directory,
            config.checkpoint.instance_id,
            STATE_ITEM_TYPES,
        )
        self._source = ChangeSource(build_engine_properties(config), engine_factory)
        self._store: OperatorStateStore | None = None
        self._checkpoint_id = self._storage.latest_checkpoint_id() or 0
        self._stop = threading.Event()
        self._failure: BaseException | None = None

    @property
    def source(self) -> ChangeSource:
        return self._source

    def restore(self) -> None:
        store = self._storage.restore()
        self._store = store
        self._source.initialize(RestoreContext(store, is_restored=store.restored))

    def checkpoint(self) -> int | None:
        """Snapshot the source and persist it; return the checkpoint id written."""
        if self._store is None:
            msg = "restore() must be called before checkpoint()"
            raise RuntimeError(msg)
        checkpoint_id = self._checkpoint_id + 1
        self._source.snapshot(
            CheckpointContext(
                checkpoint_id=checkpoint_id,
                timestamp_ms=int(time.time() * 1000),
            )
        )
        contents = self._store.contents()
        if not any(contents.values()):
            return None
        self._storage.write(checkpoint_id, contents)
        self._checkpoint_id = checkpoint_id
        self._storage.retain(self._config.checkpoint.retained)
        return checkpoint_id

    def run(self) -> None:
        """Run until stopped or the source fails; re-raises source failures."""
        self.restore()
        worker = threading.Thread(
            target=self._run_source, name=f"cdc-task-{self._config.name}"
        )
        worker.start()
        logger.info(
            "source_task.started",
            name=self._config.name,
            checkpoint_dir=str(self._storage.directory),
            interval_seconds=self._config.checkpoint.interval_seconds,
        )
        try:
            while not self._stop.wait(self._config.checkpoint.interval_seconds):
                self.checkpoint()
        finally:
            self._source.cancel()
            worker.join()

        if self._failure is not None:
            logger.error("source_task.failed", name=self._config.name)
            raise self._failure
        self.checkpoint()
        logger.info("source_task.stopped", name=self._config.name)

    def stop(self) -> None:
        self._stop.set()

    def _run_source(self) -> None:
        try:
            self._source.run(self._context)
        except BaseException as exc:  # surfaced by run()
            self._failure = exc
        finally:
            self._stop.set()
