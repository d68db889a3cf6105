"""Tool catalogue exposed to the model, and parsing of the tool calls it emits.

Tools fall into three groups:

* **query tools** are read-only and run immediately, without the gate;
* **action tools** map one-to-one onto an :class:`OperationKind` payload;
* ``execute_macro`` bundles several action tools into one proposal.

The JSON schemas sent to the model are generated from the pydantic payload
models, so the catalogue and the validators never drift apart.  This module
is the serialization boundary: everything past it is typed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from pydantic import BaseModel, Field, ValidationError

from sheetgate.exceptions import ToolCallParseError
from sheetgate.protocol.actions import (
    Action,
    ApplyFilterPayload,
    ApplyFormulaPayload,
    AutofitColumnsPayload,
    CellRef,
    ClearFiltersPayload,
    ClearRangePayload,
    CopyRangePayload,
    CreateChartPayload,
    CreatePivotPayload,
    CreateSheetPayload,
    CreateTablePayload,
    DeleteRowsPayload,
    DeleteSheetPayload,
    FormatRangePayload,
    InsertRowsPayload,
    MergeCellsPayload,
    RangeRef,
    RenameSheetPayload,
    SetColumnWidthPayload,
    SetRowHeightPayload,
    SortRangePayload,
    UnmergeCellsPayload,
    WriteCellPayload,
    WriteRangePayload,
)

if TYPE_CHECKING:
    from sheetgate.llm.client import ToolCall

MACRO_TOOL = "execute_macro"


# ---------------------------------------------------------------------------
# Query argument models
# ---------------------------------------------------------------------------


class NoArgs(BaseModel):
    pass


class SheetArgs(BaseModel):
    sheet: str = Field(default="", description="Sheet name. Empty means the active sheet.")


class SheetNameArgs(BaseModel):
    name: str = Field(description="Sheet name to look up.")


class RangeArgs(SheetArgs):
    range: RangeRef = Field(description="Range to read, e.g. 'A1:C10' or 'A:F'.")


class OptionalRangeArgs(SheetArgs):
    range: RangeRef | None = Field(default=None, description="Range to inspect. Used range if omitted.")


class CellArgs(SheetArgs):
    cell: CellRef = Field(description="Cell reference, e.g. 'B2'.")


class MacroStep(BaseModel):
    tool: str = Field(description="Name of an action tool, e.g. 'write_cell'.")
    args: dict[str, Any] = Field(default_factory=dict)


class MacroArgs(BaseModel):
    actions: list[MacroStep] = Field(min_length=1, max_length=200)


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    model: type[BaseModel]
    is_query: bool = False

    def definition(self) -> dict[str, Any]:
        """OpenAI-style function definition."""
        schema = self.model.model_json_schema()
        schema.pop("title", None)
        props = schema.get("properties", {})
        props.pop("op", None)
        if "required" in schema:
            schema["required"] = [r for r in schema["required"] if r != "op"]
        schema.setdefault("properties", props)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


QUERY_TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("list_sheets", "List every sheet in the workbook, in order.", NoArgs, True),
        ToolSpec("sheet_exists", "Check whether a sheet with this name exists.", SheetNameArgs, True),
        ToolSpec("get_used_range", "Return the used range of a sheet, e.g. 'A1:F120'.", SheetArgs, True),
        ToolSpec("get_headers", "Return the first row of a range (column headers).", OptionalRangeArgs, True),
        ToolSpec("get_range_values", "Read the values of a range as rows.", RangeArgs, True),
        ToolSpec("get_row_count", "Number of rows in the used range of a sheet.", SheetArgs, True),
        ToolSpec("get_column_count", "Number of columns in the used range of a sheet.", SheetArgs, True),
        ToolSpec("get_cell_formula", "Return the formula (or raw value) stored in a cell.", CellArgs, True),
        ToolSpec("get_active_cell", "Return the active sheet and its selected cell.", NoArgs, True),
        ToolSpec("has_filter", "Report the auto-filter range of a sheet, if any.", SheetArgs, True),
        ToolSpec("list_charts", "List the charts on a sheet.", SheetArgs, True),
        ToolSpec("list_tables", "List the Excel tables on a sheet.", SheetArgs, True),
    )
}

ACTION_TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("write_cell", "Write a value or formula into one cell.", WriteCellPayload),
        ToolSpec("write_range", "Write a block of rows starting at a cell.", WriteRangePayload),
        ToolSpec("apply_formula", "Write a formula into a cell or every cell of a range.", ApplyFormulaPayload),
        ToolSpec("clear_range", "Clear the values of a range.", ClearRangePayload),
        ToolSpec("copy_range", "Copy values from a range to a destination cell.", CopyRangePayload),
        ToolSpec("sort_range", "Sort the rows of a range by one of its columns.", SortRangePayload),
        ToolSpec("create_sheet", "Create a new sheet.", CreateSheetPayload),
        ToolSpec("delete_sheet", "Delete a sheet and its contents.", DeleteSheetPayload),
        ToolSpec("rename_sheet", "Rename a sheet.", RenameSheetPayload),
        ToolSpec("insert_rows", "Insert empty rows before a row.", InsertRowsPayload),
        ToolSpec("delete_rows", "Delete rows.", DeleteRowsPayload),
        ToolSpec("merge_cells", "Merge a range into one cell.", MergeCellsPayload),
        ToolSpec("unmerge_cells", "Unmerge a merged range.", UnmergeCellsPayload),
        ToolSpec("format_range", "Set font, fill, number format or borders of a range.", FormatRangePayload),
        ToolSpec("set_column_width", "Set the width of one or more columns.", SetColumnWidthPayload),
        ToolSpec("set_row_height", "Set the height of one or more rows.", SetRowHeightPayload),
        ToolSpec("autofit_columns", "Fit column widths to their content.", AutofitColumnsPayload),
        ToolSpec("apply_filter", "Turn on the auto-filter for a range.", ApplyFilterPayload),
        ToolSpec("clear_filters", "Remove the auto-filter from a sheet.", ClearFiltersPayload),
        ToolSpec("create_chart", "Create a chart from a data range.", CreateChartPayload),
        ToolSpec("create_table", "Format a range as a named Excel table.", CreateTablePayload),
        ToolSpec(
            "create_pivot_table",
            "Summarise a source range grouped by row fields into a destination sheet.",
            CreatePivotPayload,
        ),
    )
}

MACRO_SPEC = ToolSpec(
    MACRO_TOOL,
    "Run several action tools as one batch. Stops at the first failing step.",
    MacroArgs,
)


def is_query_tool(name: str) -> bool:
    return name in QUERY_TOOLS


def is_action_tool(name: str) -> bool:
    return name in ACTION_TOOLS or name == MACRO_TOOL


def tool_definitions() -> list[dict[str, Any]]:
    """All tools, in the order they are offered to the model."""
    specs = [*QUERY_TOOLS.values(), *ACTION_TOOLS.values(), MACRO_SPEC]
    return [s.definition() for s in specs]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryCall:
    name: str
    args: BaseModel
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ToolFailure:
    """A tool call the model got wrong.  Reported back, never executed."""

    tool_name: str
    message: str
    tool_call_id: str | None = None


@dataclass
class ParsedRound:
    actions: list[Action] = field(default_factory=list)
    queries: list[QueryCall] = field(default_factory=list)
    failures: list[ToolFailure] = field(default_factory=list)

    @property
    def has_calls(self) -> bool:
        return bool(self.actions or self.queries or self.failures)


def _decode_arguments(name: str, raw: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolCallParseError(name, f"invalid JSON arguments ({exc.msg})", raw) from exc
    if not isinstance(decoded, dict):
        raise ToolCallParseError(name, "arguments must be a JSON object", raw)
    return decoded


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def build_action(
    tool_name: str,
    args: dict[str, Any],
    *,
    workbook: str = "",
    tool_call_id: str | None = None,
) -> Action:
    """Validate *args* against the payload model of *tool_name*."""
    spec = ACTION_TOOLS.get(tool_name)
    if spec is None:
        raise ToolCallParseError(tool_name, "not an action tool")
    clean = {k: v for k, v in args.items() if k != "op"}
    try:
        payload = spec.model.model_validate(clean)
    except ValidationError as exc:
        raise ToolCallParseError(tool_name, _validation_summary(exc), json.dumps(args)) from exc
    return Action(
        payload=payload,
        tool_name=tool_name,
        tool_call_id=tool_call_id,
        workbook=workbook,
    )


def build_query(name: str, args: dict[str, Any], tool_call_id: str | None = None) -> QueryCall:
    spec = QUERY_TOOLS.get(name)
    if spec is None:
        raise ToolCallParseError(name, "not a query tool")
    try:
        model = spec.model.model_validate(args)
    except ValidationError as exc:
        raise ToolCallParseError(name, _validation_summary(exc), json.dumps(args)) from exc
    return QueryCall(name=name, args=model, tool_call_id=tool_call_id)


def expand_macro(
    args: dict[str, Any],
    *,
    workbook: str = "",
    tool_call_id: str | None = None,
) -> list[Action]:
    """Expand an ``execute_macro`` call.  All steps must parse or none are kept."""
    try:
        macro = MacroArgs.model_validate(args)
    except ValidationError as exc:
        raise ToolCallParseError(MACRO_TOOL, _validation_summary(exc), json.dumps(args)) from exc
    actions: list[Action] = []
    for index, step in enumerate(macro.actions):
        if step.tool not in ACTION_TOOLS:
            raise ToolCallParseError(
                MACRO_TOOL, f"step {index}: '{step.tool}' is not an action tool"
            )
        try:
            actions.append(
                build_action(step.tool, step.args, workbook=workbook, tool_call_id=tool_call_id)
            )
        except ToolCallParseError as exc:
            raise ToolCallParseError(MACRO_TOOL, f"step {index} ({step.tool}): {exc.reason}") from exc
    return actions


def parse_tool_calls(calls: Iterable["ToolCall"], *, workbook: str = "") -> ParsedRound:
    """Sort one round of tool calls into actions, queries and failures.

    Parse failures are collected rather than raised so the model can be told
    what it got wrong and try again in the next round.
    """
    parsed = ParsedRound()
    for call in calls:
        try:
            args = _decode_arguments(call.name, call.arguments)
            if call.name in QUERY_TOOLS:
                parsed.queries.append(build_query(call.name, args, call.id))
            elif call.name in ACTION_TOOLS:
                parsed.actions.append(
                    build_action(call.name, args, workbook=workbook, tool_call_id=call.id)
                )
            elif call.name == MACRO_TOOL:
                parsed.actions.extend(expand_macro(args, workbook=workbook, tool_call_id=call.id))
            else:
                raise ToolCallParseError(call.name, "unknown tool")
        except ToolCallParseError as exc:
            parsed.failures.append(ToolFailure(call.name, exc.reason, call.id))
    return parsed
