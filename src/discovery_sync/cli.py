"""
Typer CLI for the discovery sync service.

Provides commands for running the service, provisioning the index, and
inspecting index names and change events offline.
"""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from discovery_sync.config import get_settings
from discovery_sync.errors import DecodeError, SyncError
from discovery_sync.indexing.decoder import EventDecoder
from discovery_sync.indexing.models import OperationType, build_document, utcnow
from discovery_sync.indexing.naming import IndexNamer

app = typer.Typer(
    name="discovery-sync",
    help="Change-capture to Elasticsearch sync for the category catalog",
    add_completion=False,
)
console = Console()


def _parse_month(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m").replace(tzinfo=UTC)
    except ValueError as e:
        raise typer.BadParameter(f"Expected YYYY-MM, got {value!r}") from e


@app.command()
def serve() -> None:
    """Run the HTTP service and the configured sync mode."""
    from discovery_sync.main import run

    run()


@app.command()
def provision() -> None:
    """
    Provision the lifecycle policy, index template, current index and alias.

    Exits with status 1 when any step fails.
    """
    from discovery_sync.main import build_provisioner, build_writer
    from discovery_sync.services.provisioning import ProvisioningConfig

    settings = get_settings()

    async def run_provisioning():
        writer = build_writer(settings)
        await writer.connect()
        try:
            return await build_provisioner(settings, writer).provision()
        finally:
            await writer.close()

    try:
        report = asyncio.run(run_provisioning())
    except SyncError as e:
        console.print(f"\n[bold red]✗ Provisioning failed:[/bold red] {e}")
        raise typer.Exit(1) from e

    table = Table(title="Provisioning")
    table.add_column("Resource", style="cyan")
    table.add_column("Name")
    table.add_column("Created", justify="center")
    table.add_row("Lifecycle policy", settings.es_lifecycle_policy, str(report.policy_created))
    table.add_row(
        "Index template", ProvisioningConfig().template_name, str(report.template_created)
    )
    table.add_row("Index", report.index, str(report.index_created))
    table.add_row("Alias", report.alias, "")
    console.print(table)
    console.print("\n[bold green]✓ Index provisioned[/bold green]")


@app.command("index-name")
def index_name(
    entity: Annotated[
        str,
        typer.Argument(help="Entity type (e.g. category)"),
    ] = "category",
    environment: Annotated[
        str | None,
        typer.Option("--environment", "-e", help="Environment segment (defaults to settings)"),
    ] = None,
    month: Annotated[
        str | None,
        typer.Option("--month", "-m", help="Month bucket as YYYY-MM (defaults to now)"),
    ] = None,
) -> None:
    """Print the index and alias an entity is written to."""
    settings = get_settings()
    namer = IndexNamer(environment or settings.app_environment, settings.es_service_name)
    naming = namer.naming(entity, _parse_month(month))

    console.print(f"[bold]Index:[/bold] {naming.index_name}")
    console.print(f"[bold]Alias:[/bold] {naming.alias_name}")


@app.command()
def decode(
    event: Annotated[
        Path,
        typer.Argument(
            help="Path to a change event JSON file",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
) -> None:
    """
    Decode a change event and show the document it would write.

    Exits with status 1 when the event cannot be decoded.
    """
    console.print(Panel.fit(f"[bold]Decoding:[/bold] {event}", border_style="blue"))

    try:
        op = EventDecoder().decode(event.read_bytes())
    except DecodeError as e:
        console.print(f"\n[bold red]✗ {type(e).__name__}:[/bold red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[bold]Operation:[/bold] {op.operation.value}")
    console.print(f"[bold]Document ID:[/bold] {op.document_id}")
    console.print(f"[bold]Occurred at:[/bold] {op.occurred_at.isoformat()}")
    if op.operation is not OperationType.DELETE:
        document = build_document(op, utcnow())
        console.print_json(json.dumps(document, default=str))
