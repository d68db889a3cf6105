"""Orchestration layer — executor, undo ledger, approval gate and turn loop."""

from sheetgate.orchestration.executor import ActionResult, MutationExecutor
from sheetgate.orchestration.gate import ExecutionOutcome, GateResult, GateState, PendingActionGate
from sheetgate.orchestration.ledger import UndoLedger
from sheetgate.orchestration.messages import get_message
from sheetgate.orchestration.turn import (
    AgentTurnLoop,
    StatusMessage,
    TextChunk,
    ToolCallRequest,
    ToolResults,
    TurnDone,
    TurnEvent,
    TurnStatus,
)

__all__ = [
    "ActionResult",
    "AgentTurnLoop",
    "ExecutionOutcome",
    "GateResult",
    "GateState",
    "MutationExecutor",
    "PendingActionGate",
    "StatusMessage",
    "TextChunk",
    "ToolCallRequest",
    "ToolResults",
    "TurnDone",
    "TurnEvent",
    "TurnStatus",
    "UndoLedger",
    "get_message",
]
