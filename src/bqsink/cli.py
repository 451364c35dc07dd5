"""Typer CLI for BigQuery sinks."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bqsink.bigquery.client import RemoteError, RemoteErrorKind, TableMetadata
from bqsink.bigquery.provisioner import SchemaProvisioner
from bqsink.bigquery.schema import initial_schema
from bqsink.config.loader import load_sink_config
from bqsink.config.models import SinkConfig
from bqsink.errors import BigQuerySinkError, ProvisioningError

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="bqsink", help="BigQuery sink CLI")


def _load(config_path: str) -> SinkConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    config = load_sink_config(path)
    if config.bigquery is None:
        console.print("[red]Config has no bigquery section[/red]")
        raise typer.Exit(1)
    return config


def _is_transient(exc: BaseException) -> bool:
    """Provisioning failures caused by an unclassified remote error."""
    cause = exc.__cause__
    return (
        isinstance(exc, ProvisioningError)
        and isinstance(cause, RemoteError)
        and cause.kind == RemoteErrorKind.OTHER
    )


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to sink YAML"),
) -> None:
    """Validate a sink configuration file."""
    try:
        config = _load(config_path)
        assert config.bigquery is not None
        console.print(f"[green]Valid[/green] — sink_id={config.sink_id}")
        console.print(f"  project: {config.bigquery.project_id}")
        for i, table in enumerate(config.bigquery.tables):
            note = "" if i == 0 else " (ignored, only the first table is loaded)"
            console.print(f"  table:   {table.full_name}{note}")
            for col in table.columns:
                if col.name_from_id is not None:
                    rule = col.name_from_id
                    name = f"{rule.prefix}<{rule.suffix_from_id}>"
                else:
                    name = col.name
                console.print(
                    f"    - {name} {col.type} {col.mode.value} <- {col.value_from_id}"
                )
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def schema(
    config_path: str = typer.Argument(..., help="Path to sink YAML"),
) -> None:
    """Show the schema a new table would be created with."""
    config = _load(config_path)
    assert config.bigquery is not None
    try:
        fields = initial_schema(config.bigquery.table)
    except BigQuerySinkError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc

    table = Table(title=config.bigquery.table.full_name)
    table.add_column("Column")
    table.add_column("Type")
    table.add_column("Mode")
    table.add_column("Description")
    for f in fields:
        table.add_row(f.name, f.type, f.mode, f.description)
    console.print(table)


@app.command()
def provision(
    config_path: str = typer.Argument(..., help="Path to sink YAML"),
) -> None:
    """Create the sink's dataset and table if they don't exist."""
    from google.cloud import bigquery

    from bqsink.bigquery.adapter import GoogleBigQueryClient

    config = _load(config_path)
    assert config.bigquery is not None
    retry_cfg = config.retry
    bq_client = bigquery.Client(project=config.bigquery.project_id)
    client = GoogleBigQueryClient(bq_client, sink_id=config.sink_id)

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(retry_cfg.max_attempts),
        wait=wait_exponential(
            multiplier=retry_cfg.multiplier,
            min=retry_cfg.initial_wait_seconds,
            max=retry_cfg.max_wait_seconds,
        ),
        reraise=True,
    )
    async def _provision() -> TableMetadata:
        provisioner = SchemaProvisioner(
            client,
            config.bigquery.table,  # type: ignore[union-attr]
            asyncio.Lock(),
            default_location=config.bigquery.default_dataset_location,  # type: ignore[union-attr]
            sink_id=config.sink_id,
        )
        return await provisioner.provision()

    try:
        metadata = asyncio.run(_provision())
    except BigQuerySinkError as exc:
        console.print(f"[red]Provisioning failed:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        client.close()

    console.print(
        f"[green]Ready[/green] — {config.bigquery.table.full_name} "
        f"({len(metadata.schema)} columns)"
    )


if __name__ == "__main__":
    app()
