"""Store layer — SQLite persistence for conversations, undo entries and turn state."""

from sheetgate.store.conversations import (
    Checkpoint,
    Conversation,
    ConversationStore,
    ConversationSummary,
    Message,
    MessageRole,
)
from sheetgate.store.database import Database, open_database
from sheetgate.store.ledger_store import LedgerEntry, LedgerStore
from sheetgate.store.turns import TurnState, TurnStateStore

__all__ = [
    "Checkpoint",
    "Conversation",
    "ConversationStore",
    "ConversationSummary",
    "Database",
    "LedgerEntry",
    "LedgerStore",
    "Message",
    "MessageRole",
    "TurnState",
    "TurnStateStore",
    "open_database",
]
