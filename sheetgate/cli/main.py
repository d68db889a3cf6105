"""sheetgate CLI — Entry point.

Usage:
    sheetgate version
    sheetgate start [WORKBOOK]
    sheetgate status
    sheetgate chat WORKBOOK
    sheetgate conversations list
    sheetgate conversations show <conversation_id>
    sheetgate conversations delete <conversation_id>
"""

from __future__ import annotations

import typer
from rich.console import Console

from sheetgate import __version__
from sheetgate.cli.commands import chat, conversations, server

app = typer.Typer(
    name="sheetgate",
    help="sheetgate — Confirm-before-apply spreadsheet agent with per-conversation undo.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

console = Console()

app.command("start")(server.start)
app.command("status")(server.status)
app.command("chat")(chat.chat)
app.add_typer(conversations.app, name="conversations")


@app.command("version")
def version() -> None:
    """Print the sheetgate version."""
    console.print(f"sheetgate {__version__}")


@app.callback()
def main_callback() -> None:
    pass


if __name__ == "__main__":
    app()
