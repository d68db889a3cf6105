"""CLI — API server commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

console = Console()


def start(
    workbook: Annotated[
        Path | None, typer.Argument(help="Workbook to open (defaults to workbook.path).")
    ] = None,
    host: str | None = typer.Option(None, help="Host to bind to (defaults to server.host)."),
    port: int | None = typer.Option(None, help="Port to listen on (defaults to server.port)."),
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
    log_level: str = typer.Option("info", help="Log level."),
) -> None:
    """Serve the HTTP + WebSocket API for one workbook."""
    from sheetgate.api.server import create_app
    from sheetgate.config import Settings

    settings = Settings.load(config_file=config)
    if workbook is not None:
        settings.workbook.path = workbook
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port
    if settings.workbook.path is None:
        console.print("[red]No workbook given: pass one or set workbook.path in config.yaml[/red]")
        raise typer.Exit(1)

    console.print(
        f"[bold green]Starting sheetgate on {settings.server.host}:{settings.server.port}[/bold green]"
        f" ({settings.workbook.path})"
    )

    app_instance = create_app(settings=settings)

    uvicorn.run(
        app_instance,
        host=settings.server.host,
        port=settings.server.port,
        log_level=log_level,
    )


def status(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8765),
) -> None:
    """Check whether the API server is up."""
    import httpx

    try:
        resp = httpx.get(f"http://{host}:{port}/health", timeout=5.0)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        console.print(f"[red]Server unreachable: {exc}[/red]")
        raise typer.Exit(1)

    table = Table(title="sheetgate status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for k, v in data.items():
        table.add_row(str(k), str(v))
    console.print(table)
