"""Directory-backed durable storage for checkpointed list states.

Layout::

    <directory>/chk-<id>/<instance_id>.json   {"<state name>": [item, ...]}

Restoring a checkpoint reads every instance file of that checkpoint and
concatenates the lists per state name (union-merge).
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

import structlog

from cdc_connector.checkpoint.state import OperatorStateStore

logger = structlog.get_logger()

_CHECKPOINT_DIR = re.compile(r"^chk-(\d+)$")


class CheckpointStorageError(Exception):
    """Raised when a stored checkpoint cannot be read or written."""


class StateItem(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


class StateItemType(Protocol):
    def from_dict(self, data: dict[str, Any]) -> Any: ...


class FileCheckpointStorage:
    """Persists one instance's states per checkpoint under *directory*."""

    def __init__(
        self,
        directory: str | Path,
        instance_id: str,
        item_types: Mapping[str, StateItemType],
    ) -> None:
        self._directory = Path(directory)
        self._instance_id = instance_id
        self._item_types = dict(item_types)

    @property
    def directory(self) -> Path:
        return self._directory

    def checkpoint_ids(self) -> list[int]:
        """Return ids of checkpoints holding at least one instance file."""
        if not self._directory.exists():
            return []
        ids = []
        for child in self._directory.iterdir():
            match = _CHECKPOINT_DIR.match(child.name)
            if match and child.is_dir() and any(child.glob("*.json")):
                ids.append(int(match.group(1)))
        return sorted(ids)

    def latest_checkpoint_id(self) -> int | None:
        ids = self.checkpoint_ids()
        return ids[-1] if ids else None

    def write(self, checkpoint_id: int, contents: Mapping[str, list[StateItem]]) -> Path:
        """Atomically write this instance's states for *checkpoint_id*."""
        target_dir = self._checkpoint_dir(checkpoint_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            name: [item.to_dict() for item in items]
            for name, items in contents.items()
        }
        target = target_dir / f"{self._instance_id}.json"
        fd, tmp_name = tempfile.mkstemp(dir=target_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f)
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            msg = f"Failed to write checkpoint {checkpoint_id} to {target}"
            raise CheckpointStorageError(msg) from exc
        logger.info(
            "checkpoint.written",
            checkpoint_id=checkpoint_id,
            instance=self._instance_id,
            states={name: len(items) for name, items in payload.items()},
        )
        return target

    def restore(self, checkpoint_id: int | None = None) -> OperatorStateStore:
        """Return a state store holding the union of all instances' lists.

        With no stored checkpoint the store is empty (a fresh start).
        """
        if checkpoint_id is None:
            checkpoint_id = self.latest_checkpoint_id()
        if checkpoint_id is None:
            return OperatorStateStore()

        checkpoint_dir = self._checkpoint_dir(checkpoint_id)
        files = sorted(checkpoint_dir.glob("*.json"))
        if not files:
            msg = f"Checkpoint {checkpoint_id} not found in {self._directory}"
            raise CheckpointStorageError(msg)

        merged: dict[str, list[Any]] = {}
        for path in files:
            for name, items in self._read(path).items():
                item_type = self._item_types.get(name)
                if item_type is None:
                    logger.warning("checkpoint.unknown_state", state=name, file=str(path))
                    continue
                merged.setdefault(name, []).extend(
                    item_type.from_dict(item) for item in items
                )

        logger.info(
            "checkpoint.restored",
            checkpoint_id=checkpoint_id,
            instances=len(files),
            states={name: len(items) for name, items in merged.items()},
        )
        return OperatorStateStore(merged)

    def retain(self, count: int) -> list[int]:
        """Delete all but the newest *count* checkpoints; return deleted ids."""
        ids = self.checkpoint_ids()
        expired = ids[:-count] if count > 0 else ids
        for checkpoint_id in expired:
            shutil.rmtree(self._checkpoint_dir(checkpoint_id), ignore_errors=True)
        if expired:
            logger.debug("checkpoint.pruned", checkpoint_ids=expired)
        return expired

    def _checkpoint_dir(self, checkpoint_id: int) -> Path:
        return self._directory / f"chk-{checkpoint_id:06d}"

    @staticmethod
    def _read(path: Path) -> dict[str, list[dict[str, Any]]]:
        try:
            with path.open() as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            msg = f"Failed to read checkpoint file {path}: {exc}"
            raise CheckpointStorageError(msg) from exc
        if not isinstance(data, dict) or not all(
            isinstance(v, list) for v in data.values()
        ):
            msg = f"Malformed checkpoint file {path}"
            raise CheckpointStorageError(msg)
        return data
