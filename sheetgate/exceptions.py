"""sheetgate — Exception hierarchy.

All exceptions raised by sheetgate inherit from SheetgateError so that callers
can catch the full family with a single except clause when needed.

Hierarchy:
    SheetgateError
    ├── GateError
    │   ├── AlreadyPendingError
    │   └── InvalidTransitionError
    ├── LedgerError
    │   ├── NothingToUndoError
    │   └── UndoFailedError
    ├── ExecutionError
    │   ├── ExecutionFailedError
    │   ├── UnknownOperationError
    │   └── WorkbookError
    ├── ProtocolError
    │   └── ToolCallParseError
    ├── ModelError
    │   └── ModelUnavailableError
    ├── StoreError
    │   ├── StoreUnavailableError
    │   └── ConversationNotFoundError
    └── TruncatedError
"""

from __future__ import annotations

from typing import Any


class SheetgateError(Exception):
    """Base exception for all sheetgate errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Pending action gate
# ---------------------------------------------------------------------------


class GateError(SheetgateError):
    """Base for pending action gate errors."""


class AlreadyPendingError(GateError):
    """A proposal or turn was attempted while the gate is occupied."""

    def __init__(self, state: str) -> None:
        super().__init__(
            f"Cannot accept new actions while the gate is '{state}'",
            context={"state": state},
        )
        self.state = state


class InvalidTransitionError(GateError):
    """An operation was invoked from a state that does not allow it."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(
            f"'{operation}' is not valid while the gate is '{state}'",
            context={"operation": operation, "state": state},
        )
        self.operation = operation
        self.state = state


# ---------------------------------------------------------------------------
# Undo ledger
# ---------------------------------------------------------------------------


class LedgerError(SheetgateError):
    """Base for undo ledger errors."""


class NothingToUndoError(LedgerError):
    """No unapproved entries exist for the requested scope."""

    def __init__(self, scope: str) -> None:
        super().__init__(f"Nothing to undo for {scope}", context={"scope": scope})
        self.scope = scope


class UndoFailedError(LedgerError):
    """An inverse operation failed part-way through an undo."""

    def __init__(self, entry_id: int, cause: str, restored: int) -> None:
        super().__init__(
            f"Undo stopped at entry {entry_id} after restoring {restored}: {cause}",
            context={"entry_id": entry_id, "cause": cause, "restored": restored},
        )
        self.entry_id = entry_id
        self.cause = cause
        self.restored = restored


# ---------------------------------------------------------------------------
# Mutation execution
# ---------------------------------------------------------------------------


class ExecutionError(SheetgateError):
    """Base for mutation execution errors."""


class ExecutionFailedError(ExecutionError):
    """The document capability rejected one action of an approved batch."""

    def __init__(self, action_index: int, cause: str, tool_name: str = "") -> None:
        super().__init__(
            f"Action #{action_index} ({tool_name or 'unknown'}) failed: {cause}",
            context={"action_index": action_index, "cause": cause, "tool_name": tool_name},
        )
        self.action_index = action_index
        self.cause = cause
        self.tool_name = tool_name


class UnknownOperationError(ExecutionError):
    """No handler exists for the requested operation kind."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"Unknown operation '{operation}'",
            context={"operation": operation},
        )
        self.operation = operation


class WorkbookError(ExecutionError):
    """A workbook primitive (read, write, sheet management) failed."""


# ---------------------------------------------------------------------------
# Protocol layer
# ---------------------------------------------------------------------------


class ProtocolError(SheetgateError):
    """Base for tool-call protocol errors."""


class ToolCallParseError(ProtocolError):
    """A tool call could not be turned into a typed action or query."""

    def __init__(self, tool_name: str, reason: str, raw_arguments: str | None = None) -> None:
        super().__init__(
            f"Cannot parse tool call '{tool_name}': {reason}",
            context={"tool_name": tool_name, "reason": reason, "raw_arguments": raw_arguments},
        )
        self.tool_name = tool_name
        self.reason = reason


# ---------------------------------------------------------------------------
# Model transport
# ---------------------------------------------------------------------------


class ModelError(SheetgateError):
    """Base for model transport errors."""


class ModelUnavailableError(ModelError):
    """The chat-completion endpoint could not be reached or refused the request."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(
            f"Model unavailable: {reason}",
            context={"reason": reason, "status_code": status_code},
        )
        self.reason = reason
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class StoreError(SheetgateError):
    """Base for conversation store errors."""


class StoreUnavailableError(StoreError):
    """The SQLite database could not be opened or initialised."""


class ConversationNotFoundError(StoreError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"Conversation '{conversation_id}' not found",
            context={"conversation_id": conversation_id},
        )
        self.conversation_id = conversation_id


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------


class TruncatedError(SheetgateError):
    """The tool-call round limit was reached before the model finished."""

    def __init__(self, rounds: int) -> None:
        super().__init__(
            f"Tool-call round limit of {rounds} reached",
            context={"rounds": rounds},
        )
        self.rounds = rounds
