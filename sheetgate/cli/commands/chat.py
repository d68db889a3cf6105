"""CLI — Interactive chat against a workbook.

Streams the assistant's text as it arrives.  When the agent proposes
changes they are shown in a table and applied only after confirmation.

Slash commands:
    /undo             revert every unapproved change of this conversation
    /approve          keep the changes (they can no longer be undone)
    /context [SHEET]  attach an excerpt of the given sheets (active sheet if none)
    /new              start a new conversation
    /quit             leave
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from sheetgate.config import Settings
from sheetgate.exceptions import NothingToUndoError, SheetgateError, UndoFailedError
from sheetgate.logging import configure_logging
from sheetgate.orchestration.turn import StatusMessage, TextChunk, TurnDone, TurnStatus
from sheetgate.session import ERROR_PREFIX, AgentSession

console = Console()

_HELP = "Commands: /undo  /approve  /context [SHEET ...]  /new  /quit"


def chat(
    workbook: Annotated[Path, typer.Argument(help="Workbook to work on (created if missing).")],
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
    conversation: str | None = typer.Option(None, "--conversation", help="Resume a stored conversation."),
    auto_apply: bool = typer.Option(False, "--auto-apply", help="Apply changes without asking."),
) -> None:
    """Chat with the agent about WORKBOOK."""
    settings = Settings.load(config_file=config)
    if auto_apply:
        settings.agent.ask_before_apply = False
    configure_logging(
        level="warning",
        format=settings.logging.format,
        log_file=settings.logging.file,
    )
    try:
        asyncio.run(_run(settings, workbook, conversation))
    except SheetgateError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)


async def _run(settings: Settings, workbook: Path, conversation_id: str | None) -> None:
    session = await AgentSession.create(settings, workbook)
    try:
        if session.store_degraded:
            console.print(f"[yellow]{session.message('store_degraded')}[/yellow]")
        if conversation_id:
            await session.load_conversation(conversation_id)
        console.print(f"[bold]sheetgate[/bold] · {session.workbook.path}")
        console.print(f"[dim]{_HELP}[/dim]")

        if await session.restore_pending():
            await _review_pending(session)

        while True:
            try:
                text = console.input("[bold cyan]you>[/bold cyan] ").strip()
            except EOFError:
                break
            if not text:
                continue
            if text.startswith("/"):
                if not await _slash_command(session, text):
                    break
                continue
            await _turn(session, text)
    finally:
        await session.close()


async def _turn(session: AgentSession, text: str) -> None:
    streamed = False
    done: TurnDone | None = None
    try:
        async for event in session.stream_message(text):
            if isinstance(event, TextChunk):
                if not streamed:
                    console.print("[bold green]agent>[/bold green] ", end="")
                    streamed = True
                console.print(event.text, end="", markup=False, highlight=False)
            elif isinstance(event, StatusMessage):
                _end_line(streamed)
                streamed = False
                console.print(f"[dim]{event.text}[/dim]")
            elif isinstance(event, TurnDone):
                done = event
    except SheetgateError as exc:
        _end_line(streamed)
        console.print(f"[red]{exc.message}[/red]")
        return
    _end_line(streamed)

    if done is None:
        return
    if done.status == TurnStatus.FAILED:
        console.print(f"[red]{session.message('model_error', reason=done.error)}[/red]")
    elif done.status == TurnStatus.TRUNCATED:
        console.print(f"[yellow]{session.message('truncated', rounds=session.settings.agent.max_tool_rounds)}[/yellow]")
    elif done.status == TurnStatus.CANCELLED:
        console.print(f"[yellow]{session.message('cancelled')}[/yellow]")
    elif done.status == TurnStatus.SUSPENDED:
        await _review_pending(session)


async def _review_pending(session: AgentSession) -> None:
    """Ask about each pending batch until the agent stops proposing changes."""
    while session.has_pending_action():
        actions = session.pending_actions()
        table = Table(title=session.message("actions_pending", count=len(actions)))
        table.add_column("#", style="dim", justify="right")
        table.add_column("Tool", style="cyan")
        table.add_column("Change")
        for index, action in enumerate(actions, start=1):
            table.add_row(str(index), action.tool_name or action.kind.value, action.describe())
        console.print(table)

        if not typer.confirm("Apply these changes?", default=True):
            await session.reject_pending_action()
            console.print(f"[yellow]{session.message('actions_rejected')}[/yellow]")
            return

        reply = await session.confirm_pending_action()
        if reply.startswith(ERROR_PREFIX):
            console.print(f"[red]{reply}[/red]")
        elif reply:
            console.print("[bold green]agent>[/bold green] ", end="")
            console.print(reply, markup=False, highlight=False)


async def _slash_command(session: AgentSession, line: str) -> bool:
    """Run a slash command.  Returns False when the REPL should end."""
    command, *args = line.split()
    if command in ("/quit", "/exit"):
        return False
    if command == "/undo":
        try:
            restored = await session.undo_by_conversation()
        except NothingToUndoError:
            console.print(f"[yellow]{session.message('nothing_to_undo')}[/yellow]")
        except UndoFailedError as exc:
            console.print(f"[red]{session.message('undo_failed', count=exc.restored, cause=exc.cause)}[/red]")
        else:
            console.print(f"[green]{session.message('undo_done', count=restored)}[/green]")
    elif command == "/approve":
        approved = await session.approve_undo_actions()
        console.print(f"[green]{session.message('approved', count=approved)}[/green]")
    elif command == "/context":
        summary = await session.set_workbook_context(args)
        console.print(f"[dim]{summary}[/dim]")
    elif command == "/new":
        conversation_id = await session.new_conversation()
        console.print(f"[dim]New conversation {conversation_id}[/dim]")
    else:
        console.print(f"[dim]{_HELP}[/dim]")
    return True


def _end_line(streamed: bool) -> None:
    if streamed:
        console.print()
