"""Typer CLI for the CDC source connector."""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Any

import structlog
import typer
from rich.console import Console
from rich.table import Table

from cdc_connector.checkpoint.storage import FileCheckpointStorage
from cdc_connector.config.loader import load_connector_config
from cdc_connector.config.models import ConnectorConfig
from cdc_connector.engine.wal import WalEngine
from cdc_connector.observability.logging import configure_logging
from cdc_connector.offsets.codec import (
    PositionSerializationError,
    decode_offset_key,
    decode_offset_value,
)
from cdc_connector.runtime.task import CollectingContext, SourceTask
from cdc_connector.source.change_source import (
    HISTORY_STATE_NAME,
    OFFSET_STATE_NAME,
    STATE_ITEM_TYPES,
)
from cdc_connector.source.events import ChangeEvent

logger = structlog.get_logger()
console = Console()
err_console = Console(stderr=True)
app = typer.Typer(name="cdc-connector", help="Checkpointed CDC source connector")


def _load(config_path: str) -> ConnectorConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    return load_connector_config(path)


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to connector YAML"),
) -> None:
    """Validate a connector configuration file."""
    try:
        config = _load(config_path)
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc
    console.print(f"[green]Valid[/green] name={config.name}")
    console.print(f"  source: {config.source.host}:{config.source.port}/{config.source.database}")
    console.print(f"  tables: {config.source.tables}")
    console.print(f"  snapshot mode: {config.source.snapshot_mode}")
    console.print(f"  checkpoints: {config.checkpoint.directory}")


@app.command()
def run(
    config_path: str = typer.Argument(..., help="Path to connector YAML"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON logs"),
) -> None:
    """Capture changes and print them as JSON lines, checkpointing locally."""
    configure_logging(json=json_logs)
    config = _load(config_path)

    def _print(event: ChangeEvent, timestamp_ms: int) -> None:
        typer.echo(json.dumps(event.to_dict(), default=str))

    task = SourceTask(config, WalEngine, CollectingContext(_print))

    def _shutdown(signum: int, frame: Any) -> None:
        logger.info("connector.shutdown_signal", signal=signum)
        task.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    err_console.print(f"[yellow]Starting connector:[/yellow] {config.name}")
    try:
        task.run()
    except Exception as exc:
        err_console.print(f"[red]Connector failed:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def checkpoints(
    config_path: str = typer.Argument(..., help="Path to connector YAML"),
) -> None:
    """List stored checkpoints and the positions they hold."""
    config = _load(config_path)
    storage = FileCheckpointStorage(
        config.checkpoint.directory,
        config.checkpoint.instance_id,
        STATE_ITEM_TYPES,
    )
    ids = storage.checkpoint_ids()
    if not ids:
        console.print("[yellow]No checkpoints found[/yellow]")
        return

    table = Table(title=f"Checkpoints in {config.checkpoint.directory}")
    table.add_column("Checkpoint", style="cyan")
    table.add_column("Partition")
    table.add_column("Offset")
    table.add_column("History entries")

    for checkpoint_id in ids:
        store = storage.restore(checkpoint_id)
        history = len(store.get_union_list_state(HISTORY_STATE_NAME))
        positions = store.get_union_list_state(OFFSET_STATE_NAME).get()
        if not positions:
            table.add_row(str(checkpoint_id), "-", "-", str(history))
            continue
        for position in positions:
            if position.is_empty():
                continue
            try:
                namespace, partition = decode_offset_key(position.key)
                offset = decode_offset_value(position.value)
            except PositionSerializationError:
                table.add_row(str(checkpoint_id), "[red]unreadable[/red]", "", "")
                continue
            table.add_row(
                str(checkpoint_id),
                f"{namespace} {partition}",
                json.dumps(offset),
                str(history),
            )

    console.print(table)
