"""Unit tests for the standalone SourceTask runtime."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from cdc_connector.config.defaults import build_connector_config
from cdc_connector.config.models import ConnectorConfig
from cdc_connector.engine.base import EngineContext, EngineError, SourceRecord
from cdc_connector.engine.properties import build_engine_properties
from cdc_connector.offsets.codec import encode_offset_value
from cdc_connector.runtime.task import CollectingContext, SourceTask

PARTITION = {"server": "inventory"}


def _config(tmp_path: Path, **checkpoint: Any) -> ConnectorConfig:
    return build_connector_config(
        {
            "name": "inventory",
            "source": {
                "database": "inventory",
                "password": "pw",
                "tables": ["public.customers"],
            },
            "checkpoint": {"directory": str(tmp_path), "interval_seconds": 60, **checkpoint},
            "properties": {"heartbeat.interval.ms": 500},
        }
    )


def _record(lsn: int) -> SourceRecord:
    return SourceRecord(
        topic="inventory.public.customers",
        source_partition=PARTITION,
        source_offset={"lsn": lsn},
        value={"op": "c", "after": {"id": lsn}, "source": {}, "ts_ms": lsn},
    )


class ScriptedEngine:
    """Emits the given records, then returns."""

    def __init__(self, context: EngineContext, records: list[SourceRecord]) -> None:
        self.context = context
        self.records = records
        self.closed = threading.Event()

    def run(self) -> None:
        self.context.offset_store.configure(self.context.properties)
        for record in self.records:
            if self.closed.is_set():
                return
            self.context.handler(record)

    def close(self) -> None:
        self.closed.set()


def _factory(records: list[SourceRecord], seen: list[EngineContext] | None = None):
    def build(context: EngineContext) -> ScriptedEngine:
        if seen is not None:
            seen.append(context)
        return ScriptedEngine(context, records)

    return build


class TestEngineProperties:
    def test_derived_from_config(self, tmp_path: Path):
        props = build_engine_properties(_config(tmp_path))
        assert props["name"] == "inventory"
        assert props["database.dbname"] == "inventory"
        assert props["database.password"] == "pw"
        assert props["table.include.list"] == "public.customers"
        assert props["snapshot.mode"] == "initial"
        assert props["plugin.name"] == "pgoutput"
        assert props["heartbeat.interval.ms"] == 500
        assert props["offset.storage"].endswith("OffsetStorageBridge")

    def test_explicit_properties_win(self, tmp_path: Path):
        config = _config(tmp_path)
        config.properties["snapshot.mode"] = "never"
        assert build_engine_properties(config)["snapshot.mode"] == "never"


class TestSourceTask:
    def test_run_writes_final_checkpoint(self, tmp_path: Path):
        context = CollectingContext()
        task = SourceTask(_config(tmp_path), _factory([_record(1), _record(2)]), context)

        task.run()

        assert context.emitted == 2
        assert (tmp_path / "chk-000001" / "0.json").exists()

    def test_restart_resumes_from_checkpoint(self, tmp_path: Path):
        SourceTask(
            _config(tmp_path), _factory([_record(1), _record(2)]), CollectingContext()
        ).run()

        seen: list[EngineContext] = []
        task = SourceTask(_config(tmp_path), _factory([], seen), CollectingContext())
        task.run()

        assert seen[0].properties["snapshot.mode"] == "schema_only_recovery"
        assert task.source.position.snapshot().value == encode_offset_value({"lsn": 2})

    def test_checkpoint_skipped_before_first_record(self, tmp_path: Path):
        task = SourceTask(_config(tmp_path), _factory([]), CollectingContext())
        task.restore()
        assert task.checkpoint() is None
        assert not any(tmp_path.iterdir())

    def test_checkpoint_before_restore_raises(self, tmp_path: Path):
        task = SourceTask(_config(tmp_path), _factory([]), CollectingContext())
        with pytest.raises(RuntimeError, match="restore"):
            task.checkpoint()

    def test_checkpoints_pruned(self, tmp_path: Path):
        config = _config(tmp_path, retained=1)
        for lsn in (1, 2, 3):
            SourceTask(config, _factory([_record(lsn)]), CollectingContext()).run()

        dirs = sorted(p.name for p in tmp_path.iterdir())
        assert dirs == ["chk-000003"]

    def test_engine_failure_propagates_without_checkpoint(self, tmp_path: Path):
        def broken(context: EngineContext) -> ScriptedEngine:
            raise EngineError("cannot connect")

        task = SourceTask(_config(tmp_path), broken, CollectingContext())
        with pytest.raises(EngineError, match="cannot connect"):
            task.run()
        assert not any(tmp_path.iterdir())

    def test_stop_ends_run(self, tmp_path: Path):
        class IdleEngine(ScriptedEngine):
            def run(self) -> None:
                self.context.handler(_record(1))
                self.closed.wait(5)

        task = SourceTask(
            _config(tmp_path), lambda ctx: IdleEngine(ctx, []), CollectingContext()
        )
        runner = threading.Thread(target=task.run)
        runner.start()
        task.stop()
        runner.join(5)

        assert not runner.is_alive()

    def test_sink_receives_events(self, tmp_path: Path):
        received: list[tuple[Any, int]] = []
        context = CollectingContext(lambda event, ts: received.append((event, ts)))
        SourceTask(_config(tmp_path), _factory([_record(7)]), context).run()

        assert [ts for _, ts in received] == [7]
        assert context.events == []

    def test_restore_without_run(self, tmp_path: Path):
        SourceTask(_config(tmp_path), _factory([_record(1)]), CollectingContext()).run()
        task = SourceTask(_config(tmp_path), _factory([]), CollectingContext())
        task.restore()
        assert task.source.position.snapshot().value == encode_offset_value({"lsn": 1})
