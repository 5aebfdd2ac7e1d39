"""Last processed source position and its thread-safe holder."""

from __future__ import annotations

import base64
import threading
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class Position:
    """A serialized engine offset: partition key bytes + offset value bytes.

    Both fields ``None`` is the "not yet started" position.  A position
    whose bytes are empty is *not* empty; it was written by the engine.
    """

    key: bytes | None = None
    value: bytes | None = None

    def is_empty(self) -> bool:
        return self.key is None and self.value is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": _b64(self.key),
            "value": _b64(self.value),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Position:
        return cls(key=_unb64(data.get("key")), value=_unb64(data.get("value")))

    def __repr__(self) -> str:
        key = self.key.decode("utf-8", errors="replace") if self.key else None
        value = self.value.decode("utf-8", errors="replace") if self.value else None
        return f"Position(key={key!r}, value={value!r})"


def _b64(data: bytes | None) -> str | None:
    return None if data is None else base64.b64encode(data).decode("ascii")


def _unb64(data: str | None) -> bytes | None:
    return None if data is None else base64.b64decode(data)


class PositionState:
    """Mutable holder of the last acknowledged :class:`Position`.

    Written by the engine callback thread, read by the checkpoint thread.
    The current value is an immutable :class:`Position` swapped under a
    lock, so a reader always sees a key and value from the same update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._position = Position()

    def is_empty(self) -> bool:
        with self._lock:
            return self._position.is_empty()

    def update(self, key: bytes | None, value: bytes | None) -> None:
        """Replace key and value together.

        A missing key or value resets the state to the empty position.
        """
        if key is None or value is None:
            position = Position()
        else:
            position = Position(key=bytes(key), value=bytes(value))
        with self._lock:
            self._position = position

    def snapshot(self) -> Position:
        """Return the current position (an immutable copy)."""
        with self._lock:
            return self._position

    def __repr__(self) -> str:
        return f"PositionState({self.snapshot()!r})"
