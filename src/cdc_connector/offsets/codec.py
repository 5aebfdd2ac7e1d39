"""Encode engine partitions and offsets into position bytes.

Keys use the schemaless JSON-converter envelope the engine's offset
reader expects: ``{"schema": null, "payload": [namespace, partition]}``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any


class PositionSerializationError(Exception):
    """Raised when a partition or offset cannot be encoded or decoded."""


def encode_offset_key(namespace: str, source_partition: Mapping[str, Any]) -> bytes:
    envelope = {"schema": None, "payload": [namespace, dict(source_partition)]}
    return _dumps(envelope, what="offset key")


def encode_offset_value(source_offset: Mapping[str, Any]) -> bytes:
    return _dumps(dict(source_offset), what="offset value")


def decode_offset_key(data: bytes) -> tuple[str, dict[str, Any]]:
    """Return ``(namespace, source_partition)`` from encoded key bytes."""
    envelope = _loads(data, what="offset key")
    payload = envelope.get("payload") if isinstance(envelope, dict) else None
    if (
        not isinstance(payload, list)
        or len(payload) != 2
        or not isinstance(payload[1], dict)
    ):
        msg = f"Malformed offset key: {data!r}"
        raise PositionSerializationError(msg)
    return payload[0], payload[1]


def decode_offset_value(data: bytes) -> dict[str, Any]:
    value = _loads(data, what="offset value")
    if not isinstance(value, dict):
        msg = f"Malformed offset value: {data!r}"
        raise PositionSerializationError(msg)
    return value


def _dumps(obj: Any, *, what: str) -> bytes:
    try:
        return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        msg = f"Cannot encode {what}: {exc}"
        raise PositionSerializationError(msg) from exc


def _loads(data: bytes, *, what: str) -> Any:
    try:
        return json.loads(data)
    except (UnicodeDecodeError, ValueError) as exc:
        msg = f"Cannot decode {what}: {exc}"
        raise PositionSerializationError(msg) from exc
