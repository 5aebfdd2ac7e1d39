"""Checkpointed list state with union-merge restore semantics.

Every parallel instance writes its own list at a checkpoint.  On
restore each instance receives the union of all instances' lists and
picks out what concerns it.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ListState(Protocol):
    """A named, checkpointed list of items."""

    def get(self) -> list[Any]:
        """Return a copy of the current items."""
        ...

    def add(self, item: Any) -> None:
        ...

    def add_all(self, items: Iterable[Any]) -> None:
        ...

    def update(self, items: Iterable[Any]) -> None:
        """Replace the contents with *items*."""
        ...

    def clear(self) -> None:
        ...


class UnionListState:
    """In-memory :class:`ListState`."""

    def __init__(self, items: Iterable[Any] = ()) -> None:
        self._lock = threading.Lock()
        self._items: list[Any] = list(items)

    def get(self) -> list[Any]:
        with self._lock:
            return list(self._items)

    def add(self, item: Any) -> None:
        with self._lock:
            self._items.append(item)

    def add_all(self, items: Iterable[Any]) -> None:
        new_items = list(items)
        with self._lock:
            self._items.extend(new_items)

    def update(self, items: Iterable[Any]) -> None:
        new_items = list(items)
        with self._lock:
            self._items = new_items

    def clear(self) -> None:
        with self._lock:
            self._items = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class OperatorStateStore:
    """Holds the union list states of one source instance by name."""

    def __init__(self, restored: dict[str, list[Any]] | None = None) -> None:
        self._restored = restored or {}
        self._states: dict[str, UnionListState] = {}
        self._lock = threading.Lock()

    def get_union_list_state(self, name: str) -> UnionListState:
        """Return the named state, pre-filled with restored items on first use."""
        with self._lock:
            state = self._states.get(name)
            if state is None:
                state = UnionListState(self._restored.get(name, []))
                self._states[name] = state
            return state

    def contents(self) -> dict[str, list[Any]]:
        """Return every registered state's items, for persistence."""
        with self._lock:
            states = dict(self._states)
        return {name: state.get() for name, state in states.items()}

    @property
    def restored(self) -> bool:
        return bool(self._restored)


@dataclass
class RestoreContext:
    """Handed to ``initialize``; ``is_restored`` is false on a fresh start."""

    state_store: OperatorStateStore = field(default_factory=OperatorStateStore)
    is_restored: bool = False


@dataclass(frozen=True)
class CheckpointContext:
    """Handed to ``snapshot`` for each checkpoint barrier."""

    checkpoint_id: int
    timestamp_ms: int
