"""sheetgate — Confirm-before-apply agent pipeline for live spreadsheets.

sheetgate lets a conversational agent propose mutations against an open
workbook, holds them behind a human approval gate, and records the prior
state of every applied change so it can be reverted until explicitly approved.

Architecture layers (bottom to top):
    1. Protocol      — Tagged action variants, tool catalogue, tool-call parsing
    2. Workbook      — Cell mutation capability (openpyxl adapter), context builder
    3. Store         — SQLite conversations, undo entries, checkpoints, turn state
    4. Orchestration — Mutation executor, undo ledger, pending action gate, turn loop
    5. LLM           — Streaming chat-completion transport, history pruning
    6. Session/API   — AgentSession RPC surface, FastAPI HTTP + WebSocket, CLI
"""

__version__ = "0.1.0"
__author__ = "sheetgate contributors"

from sheetgate.protocol.actions import Action, OperationKind

__all__ = [
    "__version__",
    "Action",
    "OperationKind",
]
