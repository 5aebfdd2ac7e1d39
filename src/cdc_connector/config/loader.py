"""Reads a connector config file.

The file is YAML.  Any string value may reference the environment as
``${NAME}`` or ``${NAME:-fallback}``; references are expanded after
parsing, so a secret never has to live in the file itself.  The result is
layered over the packaged connector defaults and validated.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from cdc_connector.config.defaults import build_connector_config
from cdc_connector.config.models import ConnectorConfig

# ${NAME} or ${NAME:-fallback}; a "}" inside the fallback is written "\}"
_REFERENCE = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<fallback>(?:[^}\\]|\\.)*))?}")


def _lookup(match: re.Match[str]) -> str:
    name = match.group("name")
    value = os.environ.get(name)
    if value is not None:
        return value
    fallback = match.group("fallback")
    if fallback is None:
        msg = f"Connector config references unset environment variable '{name}' with no fallback"
        raise ValueError(msg)
    return fallback.replace("\\}", "}")


def expand_env(node: Any) -> Any:
    """Expand environment references in every string of a parsed config tree."""
    if isinstance(node, str):
        return _REFERENCE.sub(_lookup, node)
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    return node


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Parse *path* and expand its environment references.

    An empty file reads as an empty mapping, leaving validation to report
    what is missing.
    """
    config_path = Path(path)
    if not config_path.is_file():
        msg = f"No connector config at {config_path}"
        raise FileNotFoundError(msg)
    try:
        parsed = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        where = ""
        mark = getattr(exc, "problem_mark", None)
        if mark is not None:
            where = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Connector config {config_path} is not valid YAML{where}: {exc}"
        raise ValueError(msg) from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        msg = (
            f"Connector config {config_path} must be a mapping of settings, "
            f"found {type(parsed).__name__}"
        )
        raise TypeError(msg)
    return expand_env(parsed)


def load_connector_config(path: str | Path) -> ConnectorConfig:
    """Read *path*, layer it over the packaged defaults and validate it."""
    settings = read_config_file(path)
    try:
        return build_connector_config(settings)
    except ValidationError as exc:
        msg = f"Connector config {path} failed validation:\n{exc}"
        raise ValueError(msg) from exc
