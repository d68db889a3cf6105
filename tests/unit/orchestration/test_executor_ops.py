"""Unit tests — MutationExecutor forward and inverse handlers, and queries."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from sheetgate.exceptions import StoreError, UnknownOperationError, WorkbookError
from sheetgate.orchestration.executor import ActionResult, MutationExecutor
from sheetgate.orchestration.gate import GateState, PendingActionGate
from sheetgate.orchestration.ledger import UndoLedger
from sheetgate.protocol.actions import OperationKind
from sheetgate.protocol.tools import NoArgs, QueryCall, build_action, build_query
from sheetgate.store.conversations import Conversation
from sheetgate.store.ledger_store import LedgerStore
from sheetgate.workbook.openpyxl_backend import OpenpyxlWorkbook


async def _apply(
    executor: MutationExecutor,
    ledger: UndoLedger,
    conversation: Conversation,
    tool: str,
    args: dict[str, Any],
) -> tuple[ActionResult, int]:
    batch_id = await ledger.begin_batch()
    result = await executor.apply(
        build_action(tool, args), conversation_id=conversation.id, batch_id=batch_id
    )
    return result, batch_id


@pytest.mark.unit
class TestCellKinds:
    @pytest.mark.asyncio
    async def test_write_cell_records_old_value(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        result, _ = await _apply(executor, ledger, conversation, "write_cell", {"cell": "B2", "value": 42})

        assert result.success
        assert result.message == "Wrote 42 to Sheet1!B2"
        assert result.entries == 1
        assert await workbook.read_cell("Sheet1", "B2") == 42
        entries = await ledger.entries(conversation.id)
        assert entries[0].old_value == 3
        assert entries[0].cell == "B2"

    @pytest.mark.asyncio
    async def test_write_cell_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "write_cell", {"cell": "B2", "value": 42})
        assert await ledger.undo_batch(batch_id) == 1
        assert await workbook.read_cell("Sheet1", "B2") == 3

    @pytest.mark.asyncio
    async def test_write_range_one_entry_per_cell(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        result, batch_id = await _apply(
            executor, ledger, conversation, "write_range",
            {"start_cell": "E1", "values": [["a", "b"], [1, 2]]},
        )
        assert result.entries == 4
        assert await workbook.read_range("Sheet1", "E1:F2") == [["a", "b"], [1, 2]]

        await ledger.undo_batch(batch_id)
        assert await workbook.read_range("Sheet1", "E1:F2") == [[None, None], [None, None]]

    @pytest.mark.asyncio
    async def test_apply_formula_shifts_references(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        result, _ = await _apply(
            executor, ledger, conversation, "apply_formula", {"range": "D2:D4", "formula": "B2*C2"}
        )
        assert result.entries == 3
        assert await workbook.read_cell("Sheet1", "D2") == "=B2*C2"
        assert await workbook.read_cell("Sheet1", "D4") == "=B4*C4"


@pytest.mark.unit
class TestRangeKinds:
    @pytest.mark.asyncio
    async def test_clear_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "clear_range", {"range": "A2:C4"})
        assert await workbook.read_range("Sheet1", "A2:A4") == [[None], [None], [None]]

        await ledger.undo_batch(batch_id)
        assert await workbook.read_range("Sheet1", "A2:A4") == [["apple"], ["pear"], ["plum"]]

    @pytest.mark.asyncio
    async def test_sort_descending_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(
            executor, ledger, conversation, "sort_range",
            {"range": "A1:C4", "column": 2, "ascending": False, "has_header": True},
        )
        assert await workbook.read_range("Sheet1", "A1:A4") == [["Item"], ["pear"], ["apple"], ["plum"]]

        await ledger.undo_batch(batch_id)
        assert await workbook.read_range("Sheet1", "A2:A4") == [["apple"], ["pear"], ["plum"]]

    @pytest.mark.asyncio
    async def test_sort_column_outside_range(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
    ) -> None:
        with pytest.raises(WorkbookError):
            await _apply(executor, ledger, conversation, "sort_range", {"range": "A1:B4", "column": 5})
        assert await ledger.entries(conversation.id) == []

    @pytest.mark.asyncio
    async def test_copy_range(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        result, batch_id = await _apply(
            executor, ledger, conversation, "copy_range", {"source_range": "A1:B2", "dest_cell": "E1"}
        )
        assert result.message == "Copied Sheet1!A1:B2 to Sheet1!E1:F2"
        assert await workbook.read_range("Sheet1", "E1:F2") == [["Item", "Qty"], ["apple", 3]]

        await ledger.undo_batch(batch_id)
        assert await workbook.read_cell("Sheet1", "E1") is None


@pytest.mark.unit
class TestStructureKinds:
    @pytest.mark.asyncio
    async def test_create_sheet_undo_removes_it(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "create_sheet", {"name": "Summary"})
        assert await workbook.list_sheets() == ["Sheet1", "Summary"]

        await ledger.undo_batch(batch_id)
        assert await workbook.list_sheets() == ["Sheet1"]

    @pytest.mark.asyncio
    async def test_delete_sheet_undo_restores_contents(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        await workbook.create_sheet("Notes", 0)
        await workbook.write_cell("Notes", "A1", "keep me")

        _, batch_id = await _apply(executor, ledger, conversation, "delete_sheet", {"name": "Notes"})
        assert "Notes" not in await workbook.list_sheets()

        await ledger.undo_batch(batch_id)
        assert await workbook.list_sheets() == ["Notes", "Sheet1"]
        assert await workbook.read_cell("Notes", "A1") == "keep me"

    @pytest.mark.asyncio
    async def test_delete_missing_sheet(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
    ) -> None:
        with pytest.raises(WorkbookError, match="not found"):
            await _apply(executor, ledger, conversation, "delete_sheet", {"name": "Nope"})

    @pytest.mark.asyncio
    async def test_rename_sheet_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(
            executor, ledger, conversation, "rename_sheet", {"old_name": "Sheet1", "new_name": "Data"}
        )
        assert await workbook.list_sheets() == ["Data"]
        await ledger.undo_batch(batch_id)
        assert await workbook.list_sheets() == ["Sheet1"]

    @pytest.mark.asyncio
    async def test_delete_rows_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "delete_rows", {"row": 2})
        assert await workbook.read_cell("Sheet1", "A2") == "pear"

        await ledger.undo_batch(batch_id)
        assert await workbook.read_range("Sheet1", "A2:C2") == [["apple", 3, 1.5]]
        assert await workbook.read_cell("Sheet1", "A3") == "pear"

    @pytest.mark.asyncio
    async def test_insert_rows_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "insert_rows", {"row": 2, "count": 2})
        assert await workbook.read_cell("Sheet1", "A4") == "apple"

        await ledger.undo_batch(batch_id)
        assert await workbook.read_cell("Sheet1", "A2") == "apple"

    @pytest.mark.asyncio
    async def test_merge_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "merge_cells", {"range": "A2:B2"})
        assert "A2:B2" in await workbook.merged_ranges("Sheet1")

        await ledger.undo_batch(batch_id)
        assert await workbook.merged_ranges("Sheet1") == []
        assert await workbook.read_range("Sheet1", "A2:B2") == [["apple", 3]]


@pytest.mark.unit
class TestObjectKinds:
    @pytest.mark.asyncio
    async def test_format_range_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        before = await workbook.read_styles("Sheet1", "A1:C1")
        _, batch_id = await _apply(executor, ledger, conversation, "format_range", {"range": "A1:C1", "bold": True})
        assert await workbook.read_styles("Sheet1", "A1:C1") != before

        await ledger.undo_batch(batch_id)
        assert await workbook.read_styles("Sheet1", "A1:C1") == before

    @pytest.mark.asyncio
    async def test_column_width_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        before = await workbook.column_widths("Sheet1", ["B"])
        _, batch_id = await _apply(executor, ledger, conversation, "set_column_width", {"columns": "B", "width": 30})
        assert (await workbook.column_widths("Sheet1", ["B"]))["B"] == 30

        await ledger.undo_batch(batch_id)
        assert await workbook.column_widths("Sheet1", ["B"]) == before

    @pytest.mark.asyncio
    async def test_filter_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(executor, ledger, conversation, "apply_filter", {"range": "A1:C4"})
        assert await workbook.auto_filter("Sheet1") == "A1:C4"

        await ledger.undo_batch(batch_id)
        assert await workbook.auto_filter("Sheet1") is None

    @pytest.mark.asyncio
    async def test_table_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(
            executor, ledger, conversation, "create_table", {"range": "A1:C4", "name": "Fruit"}
        )
        assert await workbook.list_tables("Sheet1") == ["Fruit"]

        await ledger.undo_batch(batch_id)
        assert await workbook.list_tables("Sheet1") == []

    @pytest.mark.asyncio
    async def test_chart_and_undo(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        _, batch_id = await _apply(
            executor, ledger, conversation, "create_chart",
            {"range": "A1:B4", "chart_type": "bar", "name": "Qty chart"},
        )
        assert await workbook.list_charts("Sheet1") == ["Qty chart"]

        await ledger.undo_batch(batch_id)
        assert await workbook.list_charts("Sheet1") == []

    @pytest.mark.asyncio
    async def test_pivot_summary_creates_sheet(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
        workbook: OpenpyxlWorkbook,
    ) -> None:
        result, batch_id = await _apply(
            executor, ledger, conversation, "create_pivot_table",
            {
                "source_range": "A1:C4",
                "dest_sheet": "Pivot",
                "row_fields": ["Item"],
                "value_fields": [{"field": "qty", "function": "sum"}],
            },
        )
        assert result.entries == 2
        rows = await workbook.read_range("Pivot", "A1:B5")
        assert rows[0] == ["Item", "Sum of qty"]
        assert rows[-1] == ["Grand Total", 9]
        kinds = [e.operation for e in await ledger.entries(conversation.id)]
        assert OperationKind.CREATE_SHEET in kinds

        assert await ledger.undo_batch(batch_id) == 2
        assert await workbook.list_sheets() == ["Sheet1"]

    @pytest.mark.asyncio
    async def test_pivot_unknown_field(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
    ) -> None:
        with pytest.raises(WorkbookError, match="not found in the headers"):
            await _apply(
                executor, ledger, conversation, "create_pivot_table",
                {
                    "source_range": "A1:C4",
                    "dest_sheet": "Pivot",
                    "row_fields": ["Colour"],
                    "value_fields": [{"field": "Qty"}],
                },
            )


@pytest.mark.unit
class TestGuards:
    @pytest.mark.asyncio
    async def test_other_workbook_rejected(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
    ) -> None:
        action = build_action("write_cell", {"cell": "A1", "value": 1}, workbook="/elsewhere.xlsx")
        with pytest.raises(WorkbookError, match="is open"):
            await executor.apply(action, conversation_id=conversation.id, batch_id=1)

    @pytest.mark.asyncio
    async def test_missing_sheet_is_workbook_error(
        self, executor: MutationExecutor, ledger: UndoLedger, conversation: Conversation,
    ) -> None:
        with pytest.raises(WorkbookError):
            await _apply(executor, ledger, conversation, "write_cell", {"sheet": "Ghost", "cell": "A1", "value": 1})
        assert await ledger.entries(conversation.id) == []


@pytest.mark.unit
class TestLedgerWriteFailure:
    @pytest.mark.asyncio
    async def test_write_cell_rolled_back(
        self, executor: MutationExecutor, ledger: UndoLedger, ledger_store: LedgerStore,
        conversation: Conversation, workbook: OpenpyxlWorkbook, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(ledger_store, "insert", AsyncMock(side_effect=StoreError("disk full")))

        with pytest.raises(StoreError):
            await _apply(executor, ledger, conversation, "write_cell", {"cell": "B2", "value": 99})

        assert await workbook.read_cell("Sheet1", "B2") == 3
        assert await ledger.entries(conversation.id) == []

    @pytest.mark.asyncio
    async def test_partial_write_range_rolled_back(
        self, executor: MutationExecutor, ledger: UndoLedger, ledger_store: LedgerStore,
        conversation: Conversation, workbook: OpenpyxlWorkbook, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = ledger_store.insert
        calls = 0

        async def _insert_twice(entry):
            nonlocal calls
            calls += 1
            if calls > 2:
                raise StoreError("disk full")
            return await original(entry)

        monkeypatch.setattr(ledger_store, "insert", _insert_twice)

        with pytest.raises(StoreError):
            await _apply(
                executor, ledger, conversation, "write_range",
                {"start_cell": "B2", "values": [[10, 20], [30, 40]]},
            )

        assert await workbook.read_range("Sheet1", "B2:C3") == [[3, 1.5], [5, 2.0]]
        assert await ledger.entries(conversation.id) == []

    @pytest.mark.asyncio
    async def test_gate_reports_failure_without_trace(
        self, gate: PendingActionGate, ledger: UndoLedger, ledger_store: LedgerStore,
        conversation: Conversation, workbook: OpenpyxlWorkbook, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(ledger_store, "insert", AsyncMock(side_effect=StoreError("disk full")))
        await gate.propose(
            [build_action("write_cell", {"cell": "B2", "value": 99})], conversation_id=conversation.id
        )

        outcome = await gate.approve()

        assert not outcome.succeeded
        assert outcome.applied == 0
        assert gate.state == GateState.ERROR
        assert await workbook.read_cell("Sheet1", "B2") == 3
        assert await ledger.entries(conversation.id) == []


@pytest.mark.unit
class TestQueries:
    @pytest.mark.asyncio
    async def test_list_sheets(self, executor: MutationExecutor) -> None:
        assert await executor.run_query(build_query("list_sheets", {})) == "Sheets: Sheet1"

    @pytest.mark.asyncio
    async def test_range_values(self, executor: MutationExecutor) -> None:
        text = await executor.run_query(build_query("get_range_values", {"range": "A1:B2"}))
        assert text == 'Values of Sheet1!A1:B2: [["Item", "Qty"], ["apple", 3]]'

    @pytest.mark.asyncio
    async def test_used_range_and_counts(self, executor: MutationExecutor) -> None:
        assert await executor.run_query(build_query("get_used_range", {})) == "Used range of Sheet1: A1:C4"
        assert await executor.run_query(build_query("get_row_count", {})) == "Rows in Sheet1: 4"
        assert await executor.run_query(build_query("get_column_count", {})) == "Columns in Sheet1: 3"

    @pytest.mark.asyncio
    async def test_headers(self, executor: MutationExecutor) -> None:
        text = await executor.run_query(build_query("get_headers", {}))
        assert text == 'Headers of Sheet1!A1:C4: ["Item", "Qty", "Price"]'

    @pytest.mark.asyncio
    async def test_sheet_exists(self, executor: MutationExecutor) -> None:
        assert await executor.run_query(build_query("sheet_exists", {"name": "Nope"})) == "Sheet 'Nope' does not exist"

    @pytest.mark.asyncio
    async def test_cell_formula(self, executor: MutationExecutor, workbook: OpenpyxlWorkbook) -> None:
        await workbook.write_cell("Sheet1", "D2", "=B2*C2")
        text = await executor.run_query(build_query("get_cell_formula", {"cell": "D2"}))
        assert text == "Formula in Sheet1!D2: =B2*C2"

    @pytest.mark.asyncio
    async def test_no_filter(self, executor: MutationExecutor) -> None:
        assert await executor.run_query(build_query("has_filter", {})) == "No filter on Sheet1"

    @pytest.mark.asyncio
    async def test_unknown_query(self, executor: MutationExecutor) -> None:
        query = QueryCall(name="drop_everything", args=NoArgs())
        with pytest.raises(UnknownOperationError):
            await executor.run_query(query)
