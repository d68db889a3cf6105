"""Orchestration layer — Mutation executor.

The executor is the only component that touches the workbook on behalf of an
action.  For each action it:

  1. Resolves the target sheet ("" means the active sheet).
  2. Captures the prior state the inverse operation will need.
  3. Applies the mutation through the :class:`WorkbookBackend`.
  4. Writes one ledger entry per mutated unit once the handler returns.  If
     the ledger write fails, the changes are reverted and the error raised.

It also replays inverse operations for the ledger (``revert``) and answers
read-only query tools (``run_query``).  Each operation kind has a forward
handler and an inverse handler registered in two dispatch tables, so adding a
kind means adding a pair of methods.

Prior state by kind:
  - cell kinds (write-cell, write-range, apply-formula): one entry per cell
    carrying the old value.
  - range kinds (clear, copy, sort, merge, pivot): one entry with a value
    matrix and its origin cell in ``undo_data``.
  - structure and object kinds: one entry whose ``undo_data`` holds what the
    inverse needs (sheet index, row snapshot, widths, style snapshot...).
"""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from openpyxl.formula.translate import Translator
from openpyxl.utils import get_column_letter
from openpyxl.utils.cell import column_index_from_string, coordinate_from_string, range_boundaries

from sheetgate.exceptions import SheetgateError, StoreError, UnknownOperationError, WorkbookError
from sheetgate.logging import get_logger
from sheetgate.orchestration.ledger import UndoLedger
from sheetgate.protocol.actions import (
    Action,
    ApplyFilterPayload,
    ApplyFormulaPayload,
    AutofitColumnsPayload,
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
    OperationKind,
    RenameSheetPayload,
    SetColumnWidthPayload,
    SetRowHeightPayload,
    SortRangePayload,
    UnmergeCellsPayload,
    WriteCellPayload,
    WriteRangePayload,
)
from sheetgate.protocol.tools import QueryCall
from sheetgate.store.ledger_store import LedgerEntry
from sheetgate.workbook.base import WorkbookBackend, to_display

log = get_logger(__name__)

_MAX_QUERY_ROWS = 100
_MIN_COLUMN_WIDTH = 8.0
_MAX_COLUMN_WIDTH = 80.0


@dataclass
class ActionResult:
    """Outcome of one action inside an approved batch."""

    action: Action
    success: bool
    message: str
    entries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action.id,
            "tool": self.action.tool_name or self.action.kind.value,
            "success": self.success,
            "message": self.message,
            "entries": self.entries,
        }


@dataclass
class _Recorder:
    """Collects the ledger entries of the action being applied.

    Entries are buffered and written by ``MutationExecutor.apply`` once the
    handler returns, so a store failure can roll back the whole action.
    """

    conversation_id: str
    batch_id: int
    workbook: str
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.entries)

    async def __call__(
        self,
        operation: OperationKind,
        sheet: str,
        cell: str = "",
        *,
        old_value: Any = None,
        undo_data: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(
            LedgerEntry(
                conversation_id=self.conversation_id,
                batch_id=self.batch_id,
                operation=operation,
                sheet=sheet,
                cell=cell,
                old_value=old_value,
                undo_data=undo_data,
                workbook=self.workbook,
            )
        )


# ---------------------------------------------------------------------------
# Reference helpers
# ---------------------------------------------------------------------------


def _cell_index(cell: str) -> tuple[int, int]:
    col, row = coordinate_from_string(cell)
    return row, column_index_from_string(col)


def _coordinate(row: int, col: int) -> str:
    return f"{get_column_letter(col)}{row}"


def _origin(ref: str) -> str:
    """Top-left cell of a range; open-ended spans start at row or column 1."""
    min_col, min_row, _, _ = range_boundaries(ref)
    return _coordinate(min_row or 1, min_col or 1)


def _block_ref(start_cell: str, height: int, width: int) -> str:
    row, col = _cell_index(start_cell)
    return f"{start_cell}:{_coordinate(row + max(height, 1) - 1, col + max(width, 1) - 1)}"


def _expand_columns(span: str) -> list[str]:
    first, _, last = span.partition(":")
    start = column_index_from_string(first)
    end = column_index_from_string(last or first)
    if end < start:
        start, end = end, start
    return [get_column_letter(i) for i in range(start, end + 1)]


def _expand_rows(span: str) -> list[int]:
    first, _, last = span.partition(":")
    start, end = int(first), int(last or first)
    if end < start:
        start, end = end, start
    return list(range(start, end + 1))


def _display(value: Any) -> str:
    return "(empty)" if value is None else str(to_display(value))


def _sort_key(value: Any) -> tuple[int, float, str]:
    if isinstance(value, (int, float)):
        return (0, float(value), "")
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return (1, 0.0, value.isoformat())
    return (2, 0.0, str(value).casefold())


def _aggregate(values: list[Any], function: str) -> Any:
    if function == "count":
        return sum(1 for v in values if v is not None and v != "")
    numbers = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if function == "sum":
        return sum(numbers)
    if not numbers:
        return None
    if function == "average":
        return sum(numbers) / len(numbers)
    if function == "min":
        return min(numbers)
    return max(numbers)


Handler = Callable[[Action, _Recorder], Awaitable[str]]
Inverse = Callable[[LedgerEntry], Awaitable[None]]


class MutationExecutor:
    """Applies actions to a workbook and records what they overwrote.

    Usage::

        executor = MutationExecutor(workbook, ledger)
        ledger.bind(executor)
        result = await executor.apply(action, conversation_id=cid, batch_id=batch_id)
    """

    def __init__(self, workbook: WorkbookBackend, ledger: UndoLedger) -> None:
        self._workbook = workbook
        self._ledger = ledger
        K = OperationKind
        self._handlers: dict[OperationKind, Handler] = {
            K.WRITE_CELL: self._write_cell,
            K.WRITE_RANGE: self._write_range,
            K.APPLY_FORMULA: self._apply_formula,
            K.CLEAR_RANGE: self._clear_range,
            K.COPY_RANGE: self._copy_range,
            K.SORT_RANGE: self._sort_range,
            K.CREATE_SHEET: self._create_sheet,
            K.DELETE_SHEET: self._delete_sheet,
            K.RENAME_SHEET: self._rename_sheet,
            K.INSERT_ROWS: self._insert_rows,
            K.DELETE_ROWS: self._delete_rows,
            K.MERGE_CELLS: self._merge_cells,
            K.UNMERGE_CELLS: self._unmerge_cells,
            K.FORMAT_RANGE: self._format_range,
            K.SET_COLUMN_WIDTH: self._set_column_width,
            K.SET_ROW_HEIGHT: self._set_row_height,
            K.AUTOFIT_COLUMNS: self._autofit_columns,
            K.APPLY_FILTER: self._apply_filter,
            K.CLEAR_FILTERS: self._clear_filters,
            K.CREATE_CHART: self._create_chart,
            K.CREATE_TABLE: self._create_table,
            K.CREATE_PIVOT: self._create_pivot,
        }
        self._inverses: dict[OperationKind, Inverse] = {
            K.WRITE_CELL: self._restore_cell,
            K.WRITE_RANGE: self._restore_cell,
            K.APPLY_FORMULA: self._restore_cell,
            K.CLEAR_RANGE: self._restore_matrix,
            K.COPY_RANGE: self._restore_matrix,
            K.SORT_RANGE: self._restore_matrix,
            K.CREATE_PIVOT: self._restore_matrix,
            K.CREATE_SHEET: self._undo_create_sheet,
            K.DELETE_SHEET: self._undo_delete_sheet,
            K.RENAME_SHEET: self._undo_rename_sheet,
            K.INSERT_ROWS: self._undo_insert_rows,
            K.DELETE_ROWS: self._undo_delete_rows,
            K.MERGE_CELLS: self._undo_merge_cells,
            K.UNMERGE_CELLS: self._undo_unmerge_cells,
            K.FORMAT_RANGE: self._undo_format_range,
            K.SET_COLUMN_WIDTH: self._restore_widths,
            K.AUTOFIT_COLUMNS: self._restore_widths,
            K.SET_ROW_HEIGHT: self._restore_heights,
            K.APPLY_FILTER: self._restore_filter,
            K.CLEAR_FILTERS: self._restore_filter,
            K.CREATE_CHART: self._undo_create_chart,
            K.CREATE_TABLE: self._undo_create_table,
        }

    @property
    def workbook(self) -> WorkbookBackend:
        return self._workbook

    # ------------------------------------------------------------------
    # Forward
    # ------------------------------------------------------------------

    async def apply(self, action: Action, *, conversation_id: str, batch_id: int) -> ActionResult:
        """Apply *action* and ledger its prior state under *batch_id*.

        If the handler fails midway, whatever it already changed is still
        ledgered.  If the ledger itself cannot be written, the action is rolled
        back so no unrecorded change stays in the workbook.

        Raises:
            UnknownOperationError: No handler for the action's kind.
            WorkbookError:         The workbook rejected the mutation.
            StoreError:            The undo entries could not be written.
        """
        handler = self._handlers.get(action.kind)
        if handler is None:
            raise UnknownOperationError(action.kind.value)
        if action.workbook and action.workbook != self._workbook.path:
            raise WorkbookError(
                f"Action targets '{action.workbook}' but '{self._workbook.path}' is open",
                context={"action_id": action.id},
            )
        recorder = _Recorder(conversation_id, batch_id, self._workbook.path)
        try:
            message = await handler(action, recorder)
        except SheetgateError:
            await self._commit(action, recorder)
            raise
        await self._commit(action, recorder)
        log.info(
            "action_applied",
            action_id=action.id,
            operation=action.kind.value,
            target=str(action.target),
            batch_id=batch_id,
            entries=recorder.count,
        )
        return ActionResult(action=action, success=True, message=message, entries=recorder.count)

    async def _commit(self, action: Action, recorder: _Recorder) -> None:
        written: list[LedgerEntry] = []
        try:
            for entry in recorder.entries:
                await self._ledger.record(recorder.batch_id, entry)
                written.append(entry)
        except StoreError as exc:
            log.error("ledger_write_failed", action_id=action.id, written=len(written), error=exc.message)
            await self._roll_back(action, recorder.entries, written)
            raise

    async def _roll_back(
        self, action: Action, entries: list[LedgerEntry], written: list[LedgerEntry]
    ) -> None:
        for entry in reversed(entries):
            try:
                await self.revert(entry)
            except SheetgateError as exc:
                log.error("action_rollback_failed", action_id=action.id, sheet=entry.sheet, error=exc.message)
                return
        for entry in written:
            try:
                await self._ledger.discard(entry)
            except StoreError as exc:
                log.error("ledger_discard_failed", entry_id=entry.id, error=exc.message)
        log.warning("action_rolled_back", action_id=action.id, entries=len(entries))

    async def _sheet(self, name: str) -> str:
        return name or await self._workbook.active_sheet()

    @staticmethod
    def _snapshot(action: Action, origin: str, data: list[list[Any]], **extra: Any) -> dict[str, Any]:
        if action.undo_data is not None:
            return dict(action.undo_data)
        return {"origin": origin, "data": data, **extra}

    async def _write_cell(self, action: Action, record: _Recorder) -> str:
        p: WriteCellPayload = action.payload
        sheet = await self._sheet(p.sheet)
        old = await self._workbook.read_cell(sheet, p.cell)
        await self._workbook.write_cell(sheet, p.cell, p.value)
        await record(action.kind, sheet, p.cell, old_value=old)
        return f"Wrote {_display(p.value)} to {sheet}!{p.cell}"

    async def _write_range(self, action: Action, record: _Recorder) -> str:
        p: WriteRangePayload = action.payload
        sheet = await self._sheet(p.sheet)
        width = max(len(row) for row in p.values)
        block = _block_ref(p.start_cell, len(p.values), width)
        old = await self._workbook.read_range(sheet, block)
        written = await self._workbook.write_range(sheet, p.start_cell, p.values)
        row0, col0 = _cell_index(p.start_cell)
        for r, values in enumerate(p.values):
            for c in range(len(values)):
                await record(action.kind, sheet, _coordinate(row0 + r, col0 + c), old_value=old[r][c])
        return f"Wrote {record.count} cells to {sheet}!{written}"

    async def _apply_formula(self, action: Action, record: _Recorder) -> str:
        p: ApplyFormulaPayload = action.payload
        sheet = await self._sheet(p.sheet)
        old = await self._workbook.read_range(sheet, p.range)
        origin = _origin(p.range)
        row0, col0 = _cell_index(origin)
        # Relative references shift per cell, as a fill-down would.
        formulas = [
            [
                Translator(p.formula, origin=origin).translate_formula(_coordinate(row0 + r, col0 + c))
                for c in range(len(row))
            ]
            for r, row in enumerate(old)
        ]
        await self._workbook.write_range(sheet, origin, formulas)
        for r, row in enumerate(old):
            for c, value in enumerate(row):
                await record(action.kind, sheet, _coordinate(row0 + r, col0 + c), old_value=value)
        return f"Applied {p.formula} to {sheet}!{p.range} ({record.count} cells)"

    async def _clear_range(self, action: Action, record: _Recorder) -> str:
        p: ClearRangePayload = action.payload
        sheet = await self._sheet(p.sheet)
        old = await self._workbook.read_range(sheet, p.range)
        await self._workbook.clear_range(sheet, p.range)
        await record(action.kind, sheet, p.range, undo_data=self._snapshot(action, _origin(p.range), old))
        return f"Cleared {sheet}!{p.range}"

    async def _copy_range(self, action: Action, record: _Recorder) -> str:
        p: CopyRangePayload = action.payload
        source_sheet = await self._sheet(p.sheet)
        dest_sheet = p.dest_sheet or source_sheet
        values = await self._workbook.read_range(source_sheet, p.source_range)
        src_row, src_col = _cell_index(_origin(p.source_range))
        dst_row, dst_col = _cell_index(p.dest_cell)
        copied = [
            [
                Translator(v, origin=_coordinate(src_row + r, src_col + c)).translate_formula(
                    _coordinate(dst_row + r, dst_col + c)
                )
                if isinstance(v, str) and v.startswith("=")
                else v
                for c, v in enumerate(row)
            ]
            for r, row in enumerate(values)
        ]
        block = _block_ref(p.dest_cell, len(copied), max((len(r) for r in copied), default=1))
        old = await self._workbook.read_range(dest_sheet, block)
        await self._workbook.write_range(dest_sheet, p.dest_cell, copied)
        await record(action.kind, dest_sheet, block, undo_data=self._snapshot(action, p.dest_cell, old))
        return f"Copied {source_sheet}!{p.source_range} to {dest_sheet}!{block}"

    async def _sort_range(self, action: Action, record: _Recorder) -> str:
        p: SortRangePayload = action.payload
        sheet = await self._sheet(p.sheet)
        data = await self._workbook.read_range(sheet, p.range)
        width = max((len(r) for r in data), default=0)
        if p.column > width:
            raise WorkbookError(
                f"Sort column {p.column} is outside {p.range} ({width} columns)",
                context={"range": p.range, "column": p.column},
            )
        header, body = (data[:1], data[1:]) if p.has_header else ([], data)
        index = p.column - 1
        present = [row for row in body if row[index] is not None]
        blank = [row for row in body if row[index] is None]
        present.sort(key=lambda row: _sort_key(row[index]), reverse=not p.ascending)
        origin = _origin(p.range)
        await self._workbook.write_range(sheet, origin, [*header, *present, *blank])
        await record(action.kind, sheet, p.range, undo_data=self._snapshot(action, origin, data))
        direction = "ascending" if p.ascending else "descending"
        return f"Sorted {sheet}!{p.range} by column {p.column} ({direction})"

    async def _create_sheet(self, action: Action, record: _Recorder) -> str:
        p: CreateSheetPayload = action.payload
        await self._workbook.create_sheet(p.name, p.position)
        await record(action.kind, p.name)
        return f"Created sheet '{p.name}'"

    async def _delete_sheet(self, action: Action, record: _Recorder) -> str:
        p: DeleteSheetPayload = action.payload
        if not await self._workbook.sheet_exists(p.name):
            raise WorkbookError(f"Sheet '{p.name}' not found", context={"sheet": p.name})
        index = await self._workbook.sheet_index(p.name)
        used = await self._workbook.used_range(p.name)
        data = await self._workbook.read_range(p.name, used)
        await self._workbook.delete_sheet(p.name)
        await record(action.kind, p.name, undo_data=self._snapshot(action, _origin(used), data, index=index))
        return f"Deleted sheet '{p.name}'"

    async def _rename_sheet(self, action: Action, record: _Recorder) -> str:
        p: RenameSheetPayload = action.payload
        await self._workbook.rename_sheet(p.old_name, p.new_name)
        await record(action.kind, p.new_name, undo_data={"old_name": p.old_name, "new_name": p.new_name})
        return f"Renamed sheet '{p.old_name}' to '{p.new_name}'"

    async def _insert_rows(self, action: Action, record: _Recorder) -> str:
        p: InsertRowsPayload = action.payload
        sheet = await self._sheet(p.sheet)
        await self._workbook.insert_rows(sheet, p.row, p.count)
        await record(action.kind, sheet, p.target_ref, undo_data={"row": p.row, "count": p.count})
        return f"Inserted {p.count} row(s) at {sheet}!{p.row}"

    async def _delete_rows(self, action: Action, record: _Recorder) -> str:
        p: DeleteRowsPayload = action.payload
        sheet = await self._sheet(p.sheet)
        data = await self._workbook.read_range(sheet, p.target_ref)
        await self._workbook.delete_rows(sheet, p.row, p.count)
        await record(
            action.kind,
            sheet,
            p.target_ref,
            undo_data=self._snapshot(action, f"A{p.row}", data, row=p.row, count=p.count),
        )
        return f"Deleted {p.count} row(s) at {sheet}!{p.row}"

    async def _merge_cells(self, action: Action, record: _Recorder) -> str:
        p: MergeCellsPayload = action.payload
        sheet = await self._sheet(p.sheet)
        old = await self._workbook.read_range(sheet, p.range)
        await self._workbook.merge_cells(sheet, p.range)
        await record(action.kind, sheet, p.range, undo_data=self._snapshot(action, _origin(p.range), old))
        return f"Merged {sheet}!{p.range}"

    async def _unmerge_cells(self, action: Action, record: _Recorder) -> str:
        p: UnmergeCellsPayload = action.payload
        sheet = await self._sheet(p.sheet)
        await self._workbook.unmerge_cells(sheet, p.range)
        await record(action.kind, sheet, p.range)
        return f"Unmerged {sheet}!{p.range}"

    async def _format_range(self, action: Action, record: _Recorder) -> str:
        p: FormatRangePayload = action.payload
        sheet = await self._sheet(p.sheet)
        styles = await self._workbook.read_styles(sheet, p.range)
        touched = await self._workbook.format_range(sheet, p.range, p.style_attributes())
        await record(action.kind, sheet, p.range, undo_data=action.undo_data or {"styles": styles})
        return f"Formatted {touched} cells in {sheet}!{p.range} ({', '.join(p.style_attributes())})"

    async def _set_column_width(self, action: Action, record: _Recorder) -> str:
        p: SetColumnWidthPayload = action.payload
        sheet = await self._sheet(p.sheet)
        columns = _expand_columns(p.columns)
        previous = await self._workbook.column_widths(sheet, columns)
        await self._workbook.set_column_widths(sheet, {c: p.width for c in columns})
        await record(action.kind, sheet, p.columns, undo_data={"widths": previous})
        return f"Set width of {sheet}!{p.columns} to {p.width}"

    async def _set_row_height(self, action: Action, record: _Recorder) -> str:
        p: SetRowHeightPayload = action.payload
        sheet = await self._sheet(p.sheet)
        rows = _expand_rows(p.rows)
        previous = await self._workbook.row_heights(sheet, rows)
        await self._workbook.set_row_heights(sheet, {r: p.height for r in rows})
        await record(
            action.kind, sheet, p.rows, undo_data={"heights": {str(r): h for r, h in previous.items()}}
        )
        return f"Set height of rows {p.rows} on {sheet} to {p.height}"

    async def _autofit_columns(self, action: Action, record: _Recorder) -> str:
        p: AutofitColumnsPayload = action.payload
        sheet = await self._sheet(p.sheet)
        if p.columns:
            span = p.columns
        else:
            min_col, _, max_col, _ = range_boundaries(await self._workbook.used_range(sheet))
            span = f"{get_column_letter(min_col or 1)}:{get_column_letter(max_col or 1)}"
        columns = _expand_columns(span)
        data = await self._workbook.read_range(sheet, f"{columns[0]}:{columns[-1]}")
        widths: dict[str, float | None] = {}
        for i, column in enumerate(columns):
            longest = max(
                (len(_display(row[i])) for row in data if i < len(row) and row[i] is not None),
                default=0,
            )
            widths[column] = min(max(longest + 2.0, _MIN_COLUMN_WIDTH), _MAX_COLUMN_WIDTH)
        previous = await self._workbook.column_widths(sheet, columns)
        await self._workbook.set_column_widths(sheet, widths)
        await record(action.kind, sheet, span, undo_data={"widths": previous})
        return f"Autofitted columns {span} on {sheet}"

    async def _apply_filter(self, action: Action, record: _Recorder) -> str:
        p: ApplyFilterPayload = action.payload
        sheet = await self._sheet(p.sheet)
        previous = await self._workbook.auto_filter(sheet)
        await self._workbook.set_auto_filter(sheet, p.range)
        await record(action.kind, sheet, p.range, undo_data={"ref": previous})
        return f"Applied filter to {sheet}!{p.range}"

    async def _clear_filters(self, action: Action, record: _Recorder) -> str:
        p: ClearFiltersPayload = action.payload
        sheet = await self._sheet(p.sheet)
        previous = await self._workbook.auto_filter(sheet)
        if previous is None:
            return f"No filter to clear on {sheet}"
        await self._workbook.set_auto_filter(sheet, None)
        await record(action.kind, sheet, previous, undo_data={"ref": previous})
        return f"Cleared filter {previous} on {sheet}"

    async def _create_chart(self, action: Action, record: _Recorder) -> str:
        p: CreateChartPayload = action.payload
        sheet = await self._sheet(p.sheet)
        name = await self._workbook.add_chart(
            sheet, p.range, p.chart_type, title=p.title, anchor=p.anchor, name=p.name
        )
        await record(action.kind, sheet, p.range, undo_data={"name": name})
        return f"Created {p.chart_type} chart '{name}' from {sheet}!{p.range}"

    async def _create_table(self, action: Action, record: _Recorder) -> str:
        p: CreateTablePayload = action.payload
        sheet = await self._sheet(p.sheet)
        await self._workbook.add_table(sheet, p.range, p.name, p.style)
        await record(action.kind, sheet, p.range, undo_data={"name": p.name})
        return f"Created table '{p.name}' on {sheet}!{p.range}"

    async def _create_pivot(self, action: Action, record: _Recorder) -> str:
        p: CreatePivotPayload = action.payload
        source_sheet = await self._sheet(p.source_sheet)
        data = await self._workbook.read_range(source_sheet, p.source_range)
        if len(data) < 2:
            raise WorkbookError(
                f"{source_sheet}!{p.source_range} has no data rows to summarise",
                context={"range": p.source_range},
            )
        headers = [str(h).strip().casefold() if h is not None else "" for h in data[0]]

        def column_of(field: str) -> int:
            try:
                return headers.index(field.strip().casefold())
            except ValueError:
                raise WorkbookError(
                    f"Field '{field}' not found in the headers of {source_sheet}!{p.source_range}",
                    context={"field": field},
                ) from None

        row_cols = [column_of(f) for f in p.row_fields]
        value_cols = [(column_of(v.field), v) for v in p.value_fields]

        groups: dict[tuple[Any, ...], list[list[Any]]] = {}
        for row in data[1:]:
            key = tuple(row[i] for i in row_cols)
            if all(k is None for k in key):
                continue
            groups.setdefault(key, []).append(row)

        output: list[list[Any]] = [
            [*p.row_fields, *(f"{v.function.title()} of {v.field}" for _, v in value_cols)]
        ]
        for key, rows in groups.items():
            output.append([*key, *(_aggregate([r[i] for r in rows], v.function) for i, v in value_cols)])
        everything = [r for rows in groups.values() for r in rows]
        output.append(
            [
                "Grand Total",
                *([None] * (len(row_cols) - 1)),
                *(_aggregate([r[i] for r in everything], v.function) for i, v in value_cols),
            ]
        )

        if not await self._workbook.sheet_exists(p.dest_sheet):
            await self._workbook.create_sheet(p.dest_sheet)
            await record(OperationKind.CREATE_SHEET, p.dest_sheet)

        block = _block_ref(p.dest_cell, len(output), len(output[0]))
        old = await self._workbook.read_range(p.dest_sheet, block)
        await self._workbook.write_range(p.dest_sheet, p.dest_cell, output)
        await record(action.kind, p.dest_sheet, block, undo_data=self._snapshot(action, p.dest_cell, old))

        if p.table_name:
            await self._workbook.add_table(p.dest_sheet, block, p.table_name, "TableStyleMedium2")
            await record(OperationKind.CREATE_TABLE, p.dest_sheet, block, undo_data={"name": p.table_name})

        return (
            f"Created summary of {source_sheet}!{p.source_range} at {p.dest_sheet}!{block} "
            f"({len(groups)} groups)"
        )

    # ------------------------------------------------------------------
    # Inverse
    # ------------------------------------------------------------------

    async def revert(self, entry: LedgerEntry) -> None:
        """Replay the inverse of *entry* against the workbook."""
        inverse = self._inverses.get(entry.operation)
        if inverse is None:
            raise UnknownOperationError(entry.operation.value)
        if entry.workbook and entry.workbook != self._workbook.path:
            raise WorkbookError(
                f"Entry belongs to '{entry.workbook}' but '{self._workbook.path}' is open",
                context={"entry_id": entry.id},
            )
        await inverse(entry)
        log.info("entry_reverted", entry_id=entry.id, operation=entry.operation.value, sheet=entry.sheet)

    @staticmethod
    def _undo_data(entry: LedgerEntry) -> dict[str, Any]:
        if entry.undo_data is None:
            raise WorkbookError(
                f"Entry {entry.id} ({entry.operation.value}) has no undo data",
                context={"entry_id": entry.id},
            )
        return entry.undo_data

    async def _restore_cell(self, entry: LedgerEntry) -> None:
        await self._workbook.write_cell(entry.sheet, entry.cell, entry.old_value)

    async def _restore_matrix(self, entry: LedgerEntry) -> None:
        data = self._undo_data(entry)
        await self._workbook.write_range(entry.sheet, data["origin"], data["data"])

    async def _undo_create_sheet(self, entry: LedgerEntry) -> None:
        await self._workbook.delete_sheet(entry.sheet)

    async def _undo_delete_sheet(self, entry: LedgerEntry) -> None:
        data = self._undo_data(entry)
        await self._workbook.create_sheet(entry.sheet, data.get("index"))
        if any(v is not None for row in data["data"] for v in row):
            await self._workbook.write_range(entry.sheet, data["origin"], data["data"])

    async def _undo_rename_sheet(self, entry: LedgerEntry) -> None:
        data = self._undo_data(entry)
        await self._workbook.rename_sheet(data["new_name"], data["old_name"])

    async def _undo_insert_rows(self, entry: LedgerEntry) -> None:
        data = self._undo_data(entry)
        await self._workbook.delete_rows(entry.sheet, data["row"], data["count"])

    async def _undo_delete_rows(self, entry: LedgerEntry) -> None:
        data = self._undo_data(entry)
        await self._workbook.insert_rows(entry.sheet, data["row"], data["count"])
        await self._workbook.write_range(entry.sheet, data["origin"], data["data"])

    async def _undo_merge_cells(self, entry: LedgerEntry) -> None:
        await self._workbook.unmerge_cells(entry.sheet, entry.cell)
        await self._restore_matrix(entry)

    async def _undo_unmerge_cells(self, entry: LedgerEntry) -> None:
        await self._workbook.merge_cells(entry.sheet, entry.cell)

    async def _undo_format_range(self, entry: LedgerEntry) -> None:
        await self._workbook.write_styles(entry.sheet, self._undo_data(entry)["styles"])

    async def _restore_widths(self, entry: LedgerEntry) -> None:
        await self._workbook.set_column_widths(entry.sheet, self._undo_data(entry)["widths"])

    async def _restore_heights(self, entry: LedgerEntry) -> None:
        heights = self._undo_data(entry)["heights"]
        await self._workbook.set_row_heights(entry.sheet, {int(r): h for r, h in heights.items()})

    async def _restore_filter(self, entry: LedgerEntry) -> None:
        await self._workbook.set_auto_filter(entry.sheet, self._undo_data(entry)["ref"])

    async def _undo_create_chart(self, entry: LedgerEntry) -> None:
        await self._workbook.remove_chart(entry.sheet, self._undo_data(entry)["name"])

    async def _undo_create_table(self, entry: LedgerEntry) -> None:
        await self._workbook.remove_table(entry.sheet, self._undo_data(entry)["name"])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def run_query(self, query: QueryCall) -> str:
        """Answer a read-only tool call.  Raises WorkbookError on bad targets."""
        wb = self._workbook
        args = query.args
        name = query.name

        if name == "list_sheets":
            return "Sheets: " + ", ".join(await wb.list_sheets())
        if name == "sheet_exists":
            exists = await wb.sheet_exists(args.name)
            return f"Sheet '{args.name}' {'exists' if exists else 'does not exist'}"
        if name == "get_active_cell":
            sheet, cell = await wb.active_cell()
            return f"Active cell: {sheet}!{cell}"

        sheet = await self._sheet(getattr(args, "sheet", ""))
        if name == "get_used_range":
            return f"Used range of {sheet}: {await wb.used_range(sheet)}"
        if name == "get_headers":
            ref = args.range or await wb.used_range(sheet)
            rows = await wb.read_range(sheet, ref)
            headers = [to_display(v) for v in rows[0]] if rows else []
            return f"Headers of {sheet}!{ref}: {json.dumps(headers, ensure_ascii=False)}"
        if name == "get_range_values":
            rows = await wb.read_range(sheet, args.range)
            shown = [[to_display(v) for v in row] for row in rows[:_MAX_QUERY_ROWS]]
            text = f"Values of {sheet}!{args.range}: {json.dumps(shown, ensure_ascii=False)}"
            if len(rows) > _MAX_QUERY_ROWS:
                text += f" ({len(rows) - _MAX_QUERY_ROWS} more rows not shown)"
            return text
        if name in ("get_row_count", "get_column_count"):
            used = await wb.used_range(sheet)
            min_col, min_row, max_col, max_row = range_boundaries(used)
            empty = used == "A1" and await wb.read_cell(sheet, "A1") is None
            if name == "get_row_count":
                return f"Rows in {sheet}: {0 if empty else max_row - min_row + 1}"
            return f"Columns in {sheet}: {0 if empty else max_col - min_col + 1}"
        if name == "get_cell_formula":
            value = await wb.read_cell(sheet, args.cell)
            if isinstance(value, str) and value.startswith("="):
                return f"Formula in {sheet}!{args.cell}: {value}"
            return f"{sheet}!{args.cell} holds no formula (value: {_display(value)})"
        if name == "has_filter":
            ref = await wb.auto_filter(sheet)
            return f"Filter on {sheet}: {ref}" if ref else f"No filter on {sheet}"
        if name == "list_charts":
            charts = await wb.list_charts(sheet)
            return f"Charts on {sheet}: {', '.join(charts)}" if charts else f"No charts on {sheet}"
        if name == "list_tables":
            tables = await wb.list_tables(sheet)
            return f"Tables on {sheet}: {', '.join(tables)}" if tables else f"No tables on {sheet}"

        raise UnknownOperationError(name)
