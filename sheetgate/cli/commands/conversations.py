"""CLI — Conversation history commands.

These work directly on the SQLite store, so they need no running server.
"""

from __future__ import annotations

import asyncio
import datetime
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable

import typer
from rich.console import Console
from rich.table import Table

from sheetgate.config import Settings
from sheetgate.exceptions import ConversationNotFoundError, StoreUnavailableError
from sheetgate.store.conversations import ConversationStore
from sheetgate.store.database import open_database

app = typer.Typer(help="List, show and delete stored conversations.")
console = Console()

ConfigOpt = Annotated[Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")]


def _with_store(config: Path | None, fn: Callable[[ConversationStore], Awaitable[Any]]) -> Any:
    settings = Settings.load(config_file=config)

    async def _run() -> Any:
        db = await open_database(settings.store.db_path, fallback_to_memory=False)
        try:
            return await fn(ConversationStore(db))
        finally:
            await db.close()

    try:
        return asyncio.run(_run())
    except StoreUnavailableError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)


def _when(timestamp: float) -> str:
    return datetime.datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


@app.command("list")
def list_conversations(config: ConfigOpt = None) -> None:
    """List conversations, most recent first."""
    summaries = _with_store(config, lambda store: store.list())
    if not summaries:
        console.print("[dim]No conversations yet.[/dim]")
        return

    table = Table(title=f"Conversations ({len(summaries)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Workbook", style="dim")
    table.add_column("Updated", style="green")
    for s in summaries:
        table.add_row(s.id, s.title or "[dim](untitled)[/dim]", s.document_path, _when(s.updated_at))
    console.print(table)


@app.command("show")
def show_conversation(
    conversation_id: str = typer.Argument(help="Conversation ID."),
    config: ConfigOpt = None,
    all_messages: bool = typer.Option(False, "--all", help="Include tool results and system notes."),
) -> None:
    """Print a conversation's messages."""
    try:
        conversation = _with_store(config, lambda store: store.load(conversation_id))
    except ConversationNotFoundError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]{conversation.title or conversation.id}[/bold]  [dim]{conversation.document_path}[/dim]")
    messages = conversation.messages if all_messages else conversation.visible_messages()
    for message in messages:
        style = {"user": "cyan", "assistant": "green"}.get(message.role.value, "dim")
        console.print(f"[{style}]{message.role.value}>[/{style}] ", end="")
        console.print(message.content, markup=False, highlight=False)


@app.command("delete")
def delete_conversation(
    conversation_id: str = typer.Argument(help="Conversation ID."),
    config: ConfigOpt = None,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete a conversation with its undo entries and checkpoints."""
    if not yes:
        typer.confirm(f"Delete conversation {conversation_id}?", abort=True)
    if not _with_store(config, lambda store: store.delete(conversation_id)):
        console.print(f"[red]Conversation '{conversation_id}' not found.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Deleted[/green] {conversation_id}")
