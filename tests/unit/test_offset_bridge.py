"""Unit tests for the engine-facing offset store, history store and recovery."""

from __future__ import annotations

import pytest

from cdc_connector.history.bridge import SchemaHistoryBridge
from cdc_connector.history.ledger import HistoryEntry, HistoryLedger
from cdc_connector.offsets.bridge import (
    OFFSET_KEY_PROPERTY,
    OFFSET_VALUE_PROPERTY,
    OffsetStorageBridge,
)
from cdc_connector.offsets.codec import (
    PositionSerializationError,
    encode_offset_key,
    encode_offset_value,
)
from cdc_connector.offsets.position import Position, PositionState
from cdc_connector.recovery import SNAPSHOT_MODE_PROPERTY, RecoveryAdapter

PARTITION = {"server": "inventory"}


def _entry(ddl: str) -> HistoryEntry:
    return HistoryEntry(source=PARTITION, position={"lsn": 1}, ddl=ddl)


class TestOffsetStorageBridge:
    def test_get_on_empty_state_returns_nothing(self):
        bridge = OffsetStorageBridge(PositionState(), "inventory")
        assert bridge.get([b"anything"]) == {}
        assert bridge.offset(PARTITION) is None

    def test_commit_then_offset(self):
        state = PositionState()
        bridge = OffsetStorageBridge(state, "inventory")
        bridge.commit(PARTITION, {"lsn": 42})

        assert bridge.offset(PARTITION) == {"lsn": 42}
        assert state.snapshot() == Position(
            key=encode_offset_key("inventory", PARTITION),
            value=encode_offset_value({"lsn": 42}),
        )

    def test_get_matches_equivalent_key_encoding(self):
        state = PositionState()
        state.update(
            encode_offset_key("inventory", PARTITION), encode_offset_value({"lsn": 1})
        )
        bridge = OffsetStorageBridge(state, "inventory")
        spaced = b'{"schema": null, "payload": ["inventory", {"server": "inventory"}]}'

        assert bridge.get([spaced]) == {spaced: b'{"lsn":1}'}

    def test_get_ignores_other_partition(self):
        state = PositionState()
        bridge = OffsetStorageBridge(state, "inventory")
        bridge.commit(PARTITION, {"lsn": 1})

        assert bridge.offset({"server": "other"}) is None

    def test_set_last_entry_wins(self):
        state = PositionState()
        bridge = OffsetStorageBridge(state, "inventory")
        bridge.set({b"k1": b"v1", b"k2": b"v2"})

        assert state.snapshot() == Position(key=b"k2", value=b"v2")

    def test_configure_seeds_from_properties(self):
        state = PositionState()
        bridge = OffsetStorageBridge(state, "inventory")
        bridge.configure(
            {OFFSET_KEY_PROPERTY: '{"k":1}', OFFSET_VALUE_PROPERTY: '{"lsn":5}'}
        )

        assert state.snapshot() == Position(key=b'{"k":1}', value=b'{"lsn":5}')

    def test_configure_without_properties_leaves_state(self):
        state = PositionState()
        state.update(b"k", b"v")
        OffsetStorageBridge(state, "inventory").configure({"name": "inventory"})

        assert state.snapshot() == Position(key=b"k", value=b"v")

    def test_start_stop(self):
        bridge = OffsetStorageBridge(PositionState(), "inventory")
        assert not bridge.running

    def test_fenced_bridge_ignores_writes(self):
        state = PositionState()
        bridge = OffsetStorageBridge(state, "inventory")
        bridge.start()
        bridge.commit(PARTITION, {"lsn": 1})
        bridge.fence()

        bridge.commit(PARTITION, {"lsn": 2})
        bridge.set({b"k": b"v"})

        assert bridge.fenced
        assert bridge.offset(PARTITION) == {"lsn": 1}
        bridge.start()
        assert bridge.running
        bridge.stop()
        assert not bridge.running


class TestHistoryLedger:
    def test_append_keeps_order(self):
        ledger = HistoryLedger()
        ledger.append(_entry("a"))
        ledger.append(_entry("b"))
        assert [e.ddl for e in ledger.all()] == ["a", "b"]
        assert len(ledger) == 2

    def test_all_returns_copy(self):
        ledger = HistoryLedger()
        ledger.append(_entry("a"))
        ledger.all().clear()
        assert len(ledger) == 1

    def test_replace_all(self):
        ledger = HistoryLedger()
        ledger.append(_entry("old"))
        ledger.replace_all([_entry("x"), _entry("y")])
        assert [e.ddl for e in ledger.all()] == ["x", "y"]

    def test_entry_dict_round_trip(self):
        entry = HistoryEntry(
            source=PARTITION,
            position={"lsn": 7},
            database="inventory",
            table_changes=[{"id": "public.users", "rel_id": 1, "columns": []}],
            namespace="inventory",
        )
        assert HistoryEntry.from_dict(entry.to_dict()) == entry


class TestSchemaHistoryBridge:
    def test_record_and_recover(self):
        ledger = HistoryLedger()
        bridge = SchemaHistoryBridge(ledger, "inventory")
        assert not bridge.exists()

        bridge.record(_entry("create"))
        assert bridge.exists()
        assert [e.ddl for e in bridge.recover()] == ["create"]

    def test_bridges_do_not_share_history(self):
        first = SchemaHistoryBridge(HistoryLedger(), "inventory")
        second = SchemaHistoryBridge(HistoryLedger(), "billing")
        first.record(_entry("create"))

        assert not second.exists()

    def test_record_tags_namespace(self):
        ledger = HistoryLedger()
        SchemaHistoryBridge(ledger, "inventory").record(_entry("create"))

        assert [e.namespace for e in ledger.all()] == ["inventory"]

    def test_record_keeps_existing_namespace(self):
        ledger = HistoryLedger()
        entry = HistoryEntry(source=PARTITION, position={}, namespace="billing")
        SchemaHistoryBridge(ledger, "inventory").record(entry)

        assert ledger.all() == [entry]


class TestRecoveryAdapter:
    def test_empty_position_leaves_properties(self):
        properties = {"name": "inventory", SNAPSHOT_MODE_PROPERTY: "initial"}
        adapted = RecoveryAdapter(PositionState()).apply(properties)

        assert adapted == properties
        assert adapted is not properties

    def test_restored_position_switches_to_recovery(self):
        state = PositionState()
        state.update(b'{"k":1}', b'{"lsn":9}')
        properties = {"name": "inventory", SNAPSHOT_MODE_PROPERTY: "initial"}

        adapted = RecoveryAdapter(state).apply(properties)

        assert adapted[OFFSET_KEY_PROPERTY] == '{"k":1}'
        assert adapted[OFFSET_VALUE_PROPERTY] == '{"lsn":9}'
        assert adapted[SNAPSHOT_MODE_PROPERTY] == "schema_only_recovery"
        assert properties[SNAPSHOT_MODE_PROPERTY] == "initial"

    def test_recovery_overrides_any_snapshot_mode(self):
        state = PositionState()
        state.update(b"k", b"v")
        adapted = RecoveryAdapter(state).apply({SNAPSHOT_MODE_PROPERTY: "never"})

        assert adapted[SNAPSHOT_MODE_PROPERTY] == "schema_only_recovery"

    def test_non_utf8_position_raises(self):
        state = PositionState()
        state.update(b"\xff", b"v")
        with pytest.raises(PositionSerializationError):
            RecoveryAdapter(state).apply({})
