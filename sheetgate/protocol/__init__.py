"""Protocol layer — tagged action variants and the tool-call boundary."""

from sheetgate.protocol.actions import Action, Locator, OperationKind
from sheetgate.protocol.tools import ParsedRound, parse_tool_calls, tool_definitions

__all__ = [
    "Action",
    "Locator",
    "OperationKind",
    "ParsedRound",
    "parse_tool_calls",
    "tool_definitions",
]
